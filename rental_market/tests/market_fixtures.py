import os
import sys
from decimal import Decimal
from pathlib import Path


os.environ.setdefault("RENTAL_MARKET_DB_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("SESSION_SIGNING_SECRET", "x" * 48)

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from db.base import Base
from models.market_models import Equipment, PricePeriod, TransactionType, User, UserRole, UserType
from services.errors import PaymentGatewayError
from services.proxypay_client import GatewayResponse


def make_database():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)
    return engine, factory


def add_user(db, full_name, user_type=UserType.TENANT, role=UserRole.USER, email=None):
    user = User(
        FullName=full_name,
        Email=email or f"{full_name.lower().replace(' ', '.')}@example.ao",
        PhoneNumber="+244900000000",
        UserType=user_type,
        Role=role,
        IsActive=True,
    )
    db.add(user)
    db.commit()
    return user


def add_equipment(db, owner, name="Betoneira 400L", price="100.00", price_period=PricePeriod.DAILY):
    equipment = Equipment(
        OwnerID=owner.UserID,
        Name=name,
        Price=Decimal(price),
        PricePeriod=price_period,
        IsAvailable=True,
    )
    db.add(equipment)
    db.commit()
    return equipment


def fund(ledger, db, user, amount):
    wallet = ledger.get_or_create(db, user.UserID)
    ledger.apply_transaction(db, wallet.WalletID, TransactionType.DEPOSIT, amount, "Depósito de teste")
    return wallet


def current_wallet(ledger, db, user):
    db.expire_all()
    return ledger.find_wallet(db, user.UserID)


class FakeGateway:
    """Stands in for ProxyPayClient; records calls and hands out sequential ids."""

    def __init__(self, fail_withdrawals=False):
        self.fail_withdrawals = fail_withdrawals
        self.deposits = []
        self.withdrawals = []
        self._counter = 0

    def create_deposit(self, amount, description, customer, payment_method):
        self._counter += 1
        reference = f"{700000000 + self._counter}"
        self.deposits.append({"amount": amount, "description": description, "customer": customer, "method": payment_method})
        return GatewayResponse(
            transaction_id=reference,
            reference=reference,
            status="pending",
            payment_url=f"https://sandbox.proxypay.co.ao/payment/ENT/{reference}",
            message="Payment reference created",
        )

    def create_withdrawal(self, amount, description, destination, withdrawal_method):
        if self.fail_withdrawals:
            raise PaymentGatewayError("ProxyPay HTTP error: 500")
        self._counter += 1
        self.withdrawals.append({"amount": amount, "destination": destination, "method": withdrawal_method})
        return GatewayResponse(
            transaction_id=f"PP_WIT_{self._counter}",
            reference=f"WIT_{self._counter}",
            status="processing",
            message="Withdrawal created (sandbox)",
        )
