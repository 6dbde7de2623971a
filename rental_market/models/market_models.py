import enum

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.base import Base


class UserType(str, enum.Enum):
    LANDLORD = "LANDLORD"
    TENANT = "TENANT"


class UserRole(str, enum.Enum):
    USER = "USER"
    MODERATOR = "MODERATOR"
    ADMIN = "ADMIN"


class PricePeriod(str, enum.Enum):
    HOURLY = "HOURLY"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"


class PaymentMethod(str, enum.Enum):
    REFERENCE = "REFERENCE"
    RECEIPT = "RECEIPT"
    WALLET = "WALLET"


class RentalStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    PAID = "PAID"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"


class ReceiptStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class TransactionType(str, enum.Enum):
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    PAYMENT = "PAYMENT"
    REFUND = "REFUND"
    PRIORITY_FEE = "PRIORITY_FEE"
    PROMOTION_FEE = "PROMOTION_FEE"
    COMMISSION = "COMMISSION"
    BONUS = "BONUS"


class TransactionStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class SponsorshipStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


def _enum_column(enum_cls, **kwargs):
    return Column(Enum(enum_cls, native_enum=False, length=20, validate_strings=True), **kwargs)


class User(Base):
    __tablename__ = "Users"

    UserID = Column(Integer, primary_key=True)
    FullName = Column(String(255), nullable=False)
    Email = Column(String(255))
    PhoneNumber = Column(String(50))
    UserType = _enum_column(UserType, nullable=False, default=UserType.TENANT)
    Role = _enum_column(UserRole, nullable=False, default=UserRole.USER)
    IsActive = Column(Boolean, default=True)
    CreatedDate = Column(DateTime, server_default=func.now())

    Wallet = relationship("Wallet", back_populates="User", uselist=False)
    Equipments = relationship("Equipment", back_populates="Owner")


class Equipment(Base):
    __tablename__ = "Equipments"

    EquipmentID = Column(Integer, primary_key=True)
    OwnerID = Column(Integer, ForeignKey("Users.UserID"), nullable=False)
    Name = Column(String(255), nullable=False)
    Price = Column(Numeric(18, 2))
    PricePeriod = _enum_column(PricePeriod, default=PricePeriod.DAILY)
    IsAvailable = Column(Boolean, default=True, nullable=False)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())
    DeletedAt = Column(DateTime)

    Owner = relationship("User", back_populates="Equipments")
    Rentals = relationship("Rental", back_populates="Equipment")


class Wallet(Base):
    __tablename__ = "Wallets"
    __table_args__ = (
        CheckConstraint("HeldAmount >= 0", name="CK_Wallets_HeldAmount"),
        CheckConstraint("Balance >= HeldAmount", name="CK_Wallets_Spendable"),
    )

    WalletID = Column(Integer, primary_key=True)
    UserID = Column(Integer, ForeignKey("Users.UserID"), nullable=False, unique=True)
    Balance = Column(Numeric(18, 2), nullable=False, default=0)
    HeldAmount = Column(Numeric(18, 2), nullable=False, default=0)
    IsActive = Column(Boolean, nullable=False, default=True)
    CreatedAt = Column(DateTime, server_default=func.now())
    UpdatedAt = Column(DateTime, server_default=func.now())

    User = relationship("User", back_populates="Wallet")
    Transactions = relationship(
        "WalletTransaction",
        back_populates="Wallet",
        order_by="WalletTransaction.TransactionID.desc()",
    )


class WalletTransaction(Base):
    __tablename__ = "WalletTransactions"

    TransactionID = Column(Integer, primary_key=True)
    WalletID = Column(Integer, ForeignKey("Wallets.WalletID"), nullable=False, index=True)
    Type = _enum_column(TransactionType, nullable=False)
    Amount = Column(Numeric(18, 2), nullable=False)
    Description = Column(String(500), nullable=False)
    Status = _enum_column(TransactionStatus, nullable=False, default=TransactionStatus.COMPLETED)
    Reference = Column(String(100))
    GatewayReference = Column(String(100))
    GatewayTransactionID = Column(String(100), index=True)
    Metadata = Column(JSON)
    CreatedAt = Column(DateTime, server_default=func.now())
    UpdatedAt = Column(DateTime, server_default=func.now())

    Wallet = relationship("Wallet", back_populates="Transactions")


class Rental(Base):
    __tablename__ = "Rentals"

    RentalID = Column(Integer, primary_key=True)
    EquipmentID = Column(Integer, ForeignKey("Equipments.EquipmentID"), nullable=False, index=True)
    RenterID = Column(Integer, ForeignKey("Users.UserID"), nullable=False, index=True)
    OwnerID = Column(Integer, ForeignKey("Users.UserID"), nullable=False, index=True)
    StartDate = Column(Date, nullable=False)
    EndDate = Column(Date, nullable=False)
    StartTime = Column(String(5))
    EndTime = Column(String(5))
    TotalAmount = Column(Numeric(18, 2), nullable=False, default=0)
    DailyRate = Column(Numeric(18, 2))
    PricePeriod = _enum_column(PricePeriod, default=PricePeriod.DAILY)
    MaxRentalDays = Column(Integer)
    PaymentMethod = _enum_column(PaymentMethod, nullable=False)
    PaymentReference = Column(String(100))
    PaymentReceipt = Column(String(500))
    Status = _enum_column(RentalStatus, nullable=False, default=RentalStatus.PENDING)
    PaymentStatus = _enum_column(PaymentStatus, nullable=False, default=PaymentStatus.PENDING)
    PaymentReceiptStatus = _enum_column(ReceiptStatus)
    RejectionReason = Column(String(1000))
    ModeratedBy = Column(Integer)
    ModeratedAt = Column(DateTime)
    HasPriority = Column(Boolean, nullable=False, default=False)
    PriorityAmount = Column(Numeric(18, 2))
    PriorityPaidAt = Column(DateTime)
    RenterLatitude = Column(Numeric(10, 7))
    RenterLongitude = Column(Numeric(10, 7))
    RenterAddress = Column(String(500))
    ReturnReminderDate = Column(Date)
    ReturnNotificationSent = Column(Boolean, nullable=False, default=False)
    ApprovedAt = Column(DateTime)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())
    DeletedAt = Column(DateTime)

    Equipment = relationship("Equipment", back_populates="Rentals")
    Renter = relationship("User", foreign_keys=[RenterID])
    Owner = relationship("User", foreign_keys=[OwnerID])


class AdSponsorship(Base):
    __tablename__ = "AdSponsorships"
    __table_args__ = (
        Index(
            "UX_AdSponsorships_ActiveSponsor",
            "SponsorID",
            unique=True,
            sqlite_where=text("Status = 'ACTIVE'"),
            postgresql_where=text("\"Status\" = 'ACTIVE'"),
        ),
    )

    SponsorshipID = Column(Integer, primary_key=True)
    SponsorID = Column(Integer, ForeignKey("Users.UserID"), nullable=False)
    TargetUserID = Column(Integer, ForeignKey("Users.UserID"))
    EquipmentID = Column(Integer, ForeignKey("Equipments.EquipmentID"))
    Amount = Column(Numeric(18, 2), nullable=False)
    Duration = Column(Integer, nullable=False)
    StartDate = Column(DateTime, nullable=False)
    EndDate = Column(DateTime, nullable=False)
    Status = _enum_column(SponsorshipStatus, nullable=False, default=SponsorshipStatus.ACTIVE)
    Impressions = Column(Integer, nullable=False, default=0)
    Clicks = Column(Integer, nullable=False, default=0)
    CreatedAt = Column(DateTime, server_default=func.now())
    UpdatedAt = Column(DateTime, server_default=func.now())

    Sponsor = relationship("User", foreign_keys=[SponsorID])
    TargetUser = relationship("User", foreign_keys=[TargetUserID])
    Equipment = relationship("Equipment")


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer, nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    UserID = Column(Integer)
    CreatedAt = Column(DateTime, server_default=func.now())


class NotificationQueue(Base):
    __tablename__ = "NotificationQueue"

    NotificationID = Column(Integer, primary_key=True)
    RentalID = Column(Integer)
    NotificationType = Column(String(50), nullable=False)
    Recipient = Column(String(255))
    Payload = Column(Text)
    CreatedAt = Column(DateTime, server_default=func.now())
    SentAt = Column(DateTime)
