"""
Tests for vendor bank accounts and default selection
"""
import unittest

from sqlalchemy import func, select

from common.errors import InvalidInputError, NoVerifiedAccountError, NotFoundError
from ledger_service.models import BankAccount, HolderType
from support import add_verified_account, make_ledger


class TestBankAccountRegistry(unittest.TestCase):

    def setUp(self):
        self.ledger = make_ledger()
        self.db = self.ledger.db
        self.registry = self.ledger.bank_accounts

    def tearDown(self):
        self.db.dispose()

    def defaults(self, vendor_id="vendor-1"):
        with self.db.session() as session:
            return session.scalar(
                select(func.count()).select_from(BankAccount)
                .where(BankAccount.vendor_id == vendor_id, BankAccount.is_default.is_(True))
            )

    def test_first_account_becomes_default(self):
        account = self.ledger.add_bank_account("vendor-1", "Ana Ruiz", "Santander", "9876",
                                               holder_type=HolderType.INDIVIDUAL)
        self.assertTrue(account.is_default)
        self.assertFalse(account.is_verified)
        self.assertEqual(account.currency, "MXN")
        self.assertEqual(self.ledger.get_default_bank_account("vendor-1").id, account.id)

    def test_single_default_per_vendor(self):
        first = self.ledger.add_bank_account("vendor-1", "Ana Ruiz", "Santander", "1111")
        second = self.ledger.add_bank_account("vendor-1", "Ana Ruiz", "BBVA", "2222")
        self.assertFalse(second.is_default)

        third = self.ledger.add_bank_account("vendor-1", "Ana Ruiz", "Banorte", "3333", make_default=True)
        self.assertTrue(third.is_default)
        self.assertEqual(self.defaults(), 1)

        self.ledger.set_default_bank_account("vendor-1", first.id)
        self.assertEqual(self.defaults(), 1)
        self.assertEqual(self.ledger.get_default_bank_account("vendor-1").id, first.id)

    def test_defaults_are_per_vendor(self):
        self.ledger.add_bank_account("vendor-1", "Ana Ruiz", "Santander", "1111")
        self.ledger.add_bank_account("vendor-2", "Luis Gil", "Santander", "2222")
        self.assertEqual(self.defaults("vendor-1"), 1)
        self.assertEqual(self.defaults("vendor-2"), 1)

    def test_verify_is_idempotent(self):
        account = add_verified_account(self.ledger)
        first = self.ledger.verify_bank_account("vendor-1", account.id)
        again = self.ledger.verify_bank_account("vendor-1", account.id)
        self.assertTrue(again.is_verified)
        self.assertEqual(again.verified_at, first.verified_at)

    def test_other_vendors_accounts_are_off_limits(self):
        account = self.ledger.add_bank_account("vendor-2", "Luis Gil", "Santander", "2222")
        with self.assertRaises(InvalidInputError):
            self.ledger.verify_bank_account("vendor-1", account.id)
        with self.assertRaises(InvalidInputError):
            self.ledger.set_default_bank_account("vendor-1", account.id)

    def test_unknown_account(self):
        with self.assertRaises(NotFoundError):
            self.ledger.verify_bank_account("vendor-1", "missing")
        with self.assertRaises(NotFoundError):
            self.ledger.get_default_bank_account("vendor-1")

    def test_last4_must_be_digits(self):
        with self.assertRaises(InvalidInputError):
            self.ledger.add_bank_account("vendor-1", "Ana Ruiz", "Santander", "12a4")

    def test_require_verified_default(self):
        with self.db.session() as session:
            with self.assertRaises(NoVerifiedAccountError):
                self.registry.require_verified_default(session, "vendor-1")

        account = self.ledger.add_bank_account("vendor-1", "Ana Ruiz", "Santander", "1111")
        with self.db.session() as session:
            with self.assertRaises(NoVerifiedAccountError):
                self.registry.require_verified_default(session, "vendor-1")

        self.ledger.verify_bank_account("vendor-1", account.id)
        with self.db.session() as session:
            self.assertEqual(self.registry.require_verified_default(session, "vendor-1").id, account.id)


if __name__ == "__main__":
    unittest.main()
