import hashlib
import hmac
import unittest
from decimal import Decimal
from unittest import mock

from market_fixtures import FakeGateway, add_user, current_wallet, fund, make_database

from sqlalchemy import select

from models.market_models import TransactionStatus, TransactionType, WalletTransaction
from services.errors import (
    ForbiddenError,
    InsufficientBalanceError,
    InvalidStateError,
    NotFoundError,
    PaymentGatewayError,
    ValidationError,
)
from services.wallet_service import WalletLedger, serialize_wallet
from settings import Settings


class WalletLedgerTests(unittest.TestCase):
    def setUp(self):
        self.engine, self.factory = make_database()
        self.db = self.factory()
        self.gateway = FakeGateway()
        self.ledger = WalletLedger(Settings(), self.gateway)
        self.user = add_user(self.db, "Ana Tenant")

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def _transactions(self, wallet_id):
        self.db.expire_all()
        return list(
            self.db.execute(
                select(WalletTransaction)
                .where(WalletTransaction.WalletID == wallet_id)
                .order_by(WalletTransaction.TransactionID.asc())
            ).scalars()
        )

    def test_create_wallet_records_initial_deposit(self):
        wallet = self.ledger.create_wallet(self.db, self.user.UserID, 250)
        self.assertEqual(wallet.Balance, Decimal("250"))

        transactions = self._transactions(wallet.WalletID)
        self.assertEqual(len(transactions), 1)
        self.assertEqual(transactions[0].Type, TransactionType.DEPOSIT)
        self.assertEqual(transactions[0].Description, "Saldo inicial da carteira")
        self.assertEqual(transactions[0].Reference, f"INITIAL_{wallet.WalletID}")

        with self.assertRaises(InvalidStateError):
            self.ledger.create_wallet(self.db, self.user.UserID, 10)

    def test_get_or_create_returns_same_wallet(self):
        first = self.ledger.get_or_create(self.db, self.user.UserID)
        second = self.ledger.get_or_create(self.db, self.user.UserID)
        self.assertEqual(first.WalletID, second.WalletID)
        self.assertEqual(first.Balance, Decimal("0"))

        with self.assertRaises(NotFoundError):
            self.ledger.get_or_create(self.db, 9999)

    def test_debit_beyond_balance_is_rejected(self):
        wallet = fund(self.ledger, self.db, self.user, 100)
        with self.assertRaises(InsufficientBalanceError):
            self.ledger.apply_transaction(self.db, wallet.WalletID, TransactionType.PAYMENT, -150, "Pagamento grande")

        self.assertEqual(current_wallet(self.ledger, self.db, self.user).Balance, Decimal("100"))
        self.assertEqual(len(self._transactions(wallet.WalletID)), 1)

    def test_zero_amount_and_blank_description_are_rejected(self):
        wallet = self.ledger.get_or_create(self.db, self.user.UserID)
        with self.assertRaises(ValidationError):
            self.ledger.apply_transaction(self.db, wallet.WalletID, TransactionType.BONUS, 0, "Nada")
        with self.assertRaises(ValidationError):
            self.ledger.apply_transaction(self.db, wallet.WalletID, TransactionType.BONUS, 5, "   ")

    def test_balance_equals_sum_of_completed_transactions(self):
        wallet = fund(self.ledger, self.db, self.user, 500)
        self.ledger.apply_transaction(self.db, wallet.WalletID, TransactionType.PAYMENT, -120, "Pagamento")
        self.ledger.apply_transaction(self.db, wallet.WalletID, TransactionType.REFUND, 20, "Reembolso")
        self.ledger.deposit_via_gateway(self.db, self.user.UserID, 1000, "multicaixa")

        current = current_wallet(self.ledger, self.db, self.user)
        self.assertEqual(current.Balance, Decimal("400"))
        self.assertEqual(self.ledger.recompute_balance(self.db, wallet.WalletID), Decimal("400"))

    def test_pending_deposit_only_counts_after_gateway_confirms(self):
        fund(self.ledger, self.db, self.user, 50)
        result = self.ledger.deposit_via_gateway(self.db, self.user.UserID, 200, "multicaixa", "+244911111111")
        self.assertEqual(result["transaction"]["status"], "PENDING")
        self.assertTrue(result["paymentUrl"].endswith(result["reference"]))
        self.assertEqual(self.gateway.deposits[0]["customer"]["phone"], "+244911111111")
        self.assertEqual(current_wallet(self.ledger, self.db, self.user).Balance, Decimal("50"))

        event = {"event_type": "payment.completed", "transaction_id": result["reference"]}
        tx = self.ledger.handle_gateway_event(self.db, event)
        self.assertEqual(tx.Status, TransactionStatus.COMPLETED)
        self.assertEqual(current_wallet(self.ledger, self.db, self.user).Balance, Decimal("250"))

        # Redelivery of the same webhook is a no-op.
        again = self.ledger.handle_gateway_event(self.db, event)
        self.assertEqual(again.Status, TransactionStatus.COMPLETED)
        self.assertEqual(current_wallet(self.ledger, self.db, self.user).Balance, Decimal("250"))

    def test_failed_deposit_leaves_balance_alone(self):
        result = self.ledger.deposit_via_gateway(self.db, self.user.UserID, 80, "multicaixa")
        tx = self.ledger.handle_gateway_event(
            self.db, {"event_type": "payment.failed", "transaction_id": result["reference"]}
        )
        self.assertEqual(tx.Status, TransactionStatus.FAILED)
        self.assertEqual(current_wallet(self.ledger, self.db, self.user).Balance, Decimal("0"))

        # A late success for a failed transaction must not resurrect it.
        late = self.ledger.handle_gateway_event(
            self.db, {"event_type": "payment.completed", "transaction_id": result["reference"]}
        )
        self.assertEqual(late.Status, TransactionStatus.FAILED)
        self.assertEqual(current_wallet(self.ledger, self.db, self.user).Balance, Decimal("0"))

    def test_withdrawal_holds_funds_until_completed(self):
        wallet = fund(self.ledger, self.db, self.user, 300)
        result = self.ledger.withdraw_via_gateway(self.db, self.user.UserID, 100, "bank_transfer", "AO06000000000000000000000")
        self.assertEqual(result["transaction"]["amount"], Decimal("-100"))
        self.assertEqual(result["status"], "processing")

        current = current_wallet(self.ledger, self.db, self.user)
        self.assertEqual(current.Balance, Decimal("300"))
        self.assertEqual(current.HeldAmount, Decimal("100"))
        self.assertEqual(serialize_wallet(current)["availableBalance"], Decimal("200"))

        with self.assertRaises(InsufficientBalanceError):
            self.ledger.apply_transaction(self.db, wallet.WalletID, TransactionType.PAYMENT, -250, "Pagamento")

        self.ledger.handle_gateway_event(
            self.db,
            {"event_type": "withdrawal.completed", "transaction_id": result["transaction"]["gatewayTransactionID"]},
        )
        current = current_wallet(self.ledger, self.db, self.user)
        self.assertEqual(current.Balance, Decimal("200"))
        self.assertEqual(current.HeldAmount, Decimal("0"))
        self.assertEqual(self.ledger.recompute_balance(self.db, wallet.WalletID), Decimal("200"))

    def test_failed_withdrawal_releases_hold(self):
        fund(self.ledger, self.db, self.user, 300)
        result = self.ledger.withdraw_via_gateway(self.db, self.user.UserID, 100, "bank_transfer", "AO0600")
        self.ledger.handle_gateway_event(
            self.db,
            {"event_type": "withdrawal.failed", "transaction_id": result["transaction"]["gatewayTransactionID"]},
        )
        current = current_wallet(self.ledger, self.db, self.user)
        self.assertEqual(current.Balance, Decimal("300"))
        self.assertEqual(current.HeldAmount, Decimal("0"))

    def test_gateway_error_rolls_back_withdrawal_hold(self):
        wallet = fund(self.ledger, self.db, self.user, 300)
        self.gateway.fail_withdrawals = True
        with self.assertRaises(PaymentGatewayError):
            self.ledger.withdraw_via_gateway(self.db, self.user.UserID, 100, "bank_transfer", "AO0600")

        current = current_wallet(self.ledger, self.db, self.user)
        self.assertEqual(current.HeldAmount, Decimal("0"))
        types = [tx.Type for tx in self._transactions(wallet.WalletID)]
        self.assertNotIn(TransactionType.WITHDRAWAL, types)

    def test_unrecorded_gateway_withdrawal_is_logged_for_reconciliation(self):
        wallet = fund(self.ledger, self.db, self.user, 300)
        with mock.patch.object(self.ledger, "_record", side_effect=RuntimeError("disk full")):
            with self.assertLogs("rental_market.wallet", level="ERROR") as logs:
                with self.assertRaises(RuntimeError):
                    self.ledger.withdraw_via_gateway(self.db, self.user.UserID, 100, "bank_transfer", "AO0600")

        self.assertEqual(len(self.gateway.withdrawals), 1)
        self.assertIn("WIT_", logs.output[0])
        self.assertEqual(current_wallet(self.ledger, self.db, self.user).HeldAmount, Decimal("0"))
        types = [tx.Type for tx in self._transactions(wallet.WalletID)]
        self.assertNotIn(TransactionType.WITHDRAWAL, types)

    def test_withdrawal_above_available_never_reaches_gateway(self):
        fund(self.ledger, self.db, self.user, 50)
        with self.assertRaises(InsufficientBalanceError):
            self.ledger.withdraw_via_gateway(self.db, self.user.UserID, 100, "bank_transfer", "AO0600")
        self.assertEqual(self.gateway.withdrawals, [])

    def test_gateway_event_routing_errors(self):
        result = self.ledger.deposit_via_gateway(self.db, self.user.UserID, 80, "multicaixa")

        self.assertIsNone(self.ledger.handle_gateway_event(self.db, {"event_type": "payment.refunded"}))
        with self.assertRaises(ValidationError):
            self.ledger.handle_gateway_event(self.db, {"event_type": "payment.completed"})
        with self.assertRaises(NotFoundError):
            self.ledger.handle_gateway_event(self.db, {"event_type": "payment.completed", "transaction_id": "nope"})
        with self.assertRaises(InvalidStateError):
            self.ledger.handle_gateway_event(
                self.db, {"event_type": "withdrawal.completed", "transaction_id": result["reference"]}
            )

    def test_recorded_transaction_cannot_be_rewritten(self):
        wallet = fund(self.ledger, self.db, self.user, 100)
        tx = self._transactions(wallet.WalletID)[0]

        tx.Amount = Decimal("999")
        with self.assertRaises(InvalidStateError):
            self.db.commit()
        self.db.rollback()

        self.assertEqual(self._transactions(wallet.WalletID)[0].Amount, Decimal("100"))
        self.assertEqual(self.ledger.recompute_balance(self.db, wallet.WalletID), Decimal("100"))

    def test_stale_session_cannot_overdraw(self):
        wallet = fund(self.ledger, self.db, self.user, 100)
        stale = self.ledger.get_or_create(self.db, self.user.UserID)
        self.assertEqual(stale.Balance, Decimal("100"))

        other = self.factory()
        try:
            self.ledger.apply_transaction(other, wallet.WalletID, TransactionType.PAYMENT, -60, "Pagamento B")
        finally:
            other.close()

        with self.assertRaises(InsufficientBalanceError):
            self.ledger.apply_transaction(self.db, wallet.WalletID, TransactionType.PAYMENT, -60, "Pagamento A")
        self.assertEqual(current_wallet(self.ledger, self.db, self.user).Balance, Decimal("40"))

    def test_metadata_is_flattened_to_primitives(self):
        wallet = self.ledger.get_or_create(self.db, self.user.UserID)
        tx = self.ledger.apply_transaction(
            self.db,
            wallet.WalletID,
            TransactionType.BONUS,
            10,
            "Bónus",
            metadata={"campaign": "launch", "rate": Decimal("1.50"), "count": 2},
        )
        self.assertEqual(tx.Metadata, {"campaign": "launch", "rate": "1.50", "count": 2})

        with self.assertRaises(ValidationError):
            self.ledger.apply_transaction(
                self.db, wallet.WalletID, TransactionType.BONUS, 10, "Bónus", metadata={"nested": {"a": 1}}
            )

    def test_list_transactions_paginates_newest_first(self):
        wallet = fund(self.ledger, self.db, self.user, 100)
        self.ledger.apply_transaction(self.db, wallet.WalletID, TransactionType.PAYMENT, -10, "Primeiro")
        self.ledger.apply_transaction(self.db, wallet.WalletID, TransactionType.PAYMENT, -20, "Segundo")

        first_page = self.ledger.list_transactions(self.db, wallet.WalletID, page=1, limit=2)
        self.assertEqual(first_page["total"], 3)
        self.assertEqual(first_page["totalPages"], 2)
        self.assertEqual([tx["description"] for tx in first_page["transactions"]], ["Segundo", "Primeiro"])

        second_page = self.ledger.list_transactions(self.db, wallet.WalletID, page=2, limit=2)
        self.assertEqual(len(second_page["transactions"]), 1)

        with self.assertRaises(NotFoundError):
            self.ledger.list_transactions(self.db, 9999)

    def test_webhook_signature_check(self):
        ledger = WalletLedger(Settings(proxypay_webhook_secret="hook-secret"), self.gateway)
        body = b'{"event_type":"payment.completed"}'
        signature = hmac.new(b"hook-secret", body, hashlib.sha256).hexdigest()

        ledger.verify_webhook_signature(body, signature)
        with self.assertRaises(ForbiddenError):
            ledger.verify_webhook_signature(body, "0" * 64)
        with self.assertRaises(ForbiddenError):
            ledger.verify_webhook_signature(body, None)

        # Without a configured secret the check is skipped.
        self.ledger.verify_webhook_signature(body, None)


if __name__ == "__main__":
    unittest.main()
