"""
Wallet Ledger Service - append-only balance ledger per user

Balances are never stored; they are the sum of a wallet's ledger entries.
Postings are made inside the caller's session so they commit atomically with
the escrow transition that caused them.
"""

import logging
from decimal import Decimal
from typing import Callable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from config import Config
from models import LedgerEntryType, Wallet, WalletLedgerEntry
from utils.exception_handler import ValidationError
from utils.fee_calculator import FeeCalculator
from utils.helpers import utc_now

logger = logging.getLogger(__name__)


class WalletLedger:
    """Service for appending and reading wallet ledger entries"""

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None, clock=None):
        if session_factory is None:
            from database import SessionLocal
            session_factory = SessionLocal
        self.session_factory = session_factory
        self.clock = clock or utc_now

    def get_or_create_wallet(self, session: Session, user_id: int) -> Wallet:
        wallet = session.execute(
            select(Wallet).where(Wallet.user_id == user_id)
        ).scalar_one_or_none()
        if wallet is None:
            wallet = Wallet(user_id=user_id, currency=Config.ESCROW_CURRENCY, created_at=self.clock())
            session.add(wallet)
            session.flush()
            logger.info(f"👛 WALLET_CREATED: user {user_id} wallet {wallet.id}")
        return wallet

    def post_entry(
        self,
        session: Session,
        user_id: int,
        amount: Decimal,
        entry_type: LedgerEntryType,
        escrow_id: Optional[int] = None,
        description: Optional[str] = None,
    ) -> WalletLedgerEntry:
        """
        Append a signed entry; credits are positive, debits negative.
        Does not commit: the caller's transaction owns the commit.
        """
        value = FeeCalculator.quantize(amount)
        if value == 0:
            raise ValidationError("Ledger entries must have a non-zero amount")

        wallet = self.get_or_create_wallet(session, user_id)
        entry = WalletLedgerEntry(
            wallet_id=wallet.id,
            amount=value,
            entry_type=entry_type,
            escrow_id=escrow_id,
            description=description,
            created_at=self.clock(),
        )
        session.add(entry)
        session.flush()
        logger.info(
            f"📒 LEDGER_POST: user {user_id} {entry_type.value} {value:+} "
            f"(escrow={escrow_id}, entry={entry.id})"
        )
        return entry

    def balance_in_session(self, session: Session, user_id: int) -> Decimal:
        total = session.execute(
            select(func.coalesce(func.sum(WalletLedgerEntry.amount), 0))
            .join(Wallet, Wallet.id == WalletLedgerEntry.wallet_id)
            .where(Wallet.user_id == user_id)
        ).scalar_one()
        return FeeCalculator.quantize(total)

    def get_balance(self, user_id: int) -> Decimal:
        """Committed balance: the sum of every ledger entry for the user's wallet"""
        session = self.session_factory()
        try:
            return self.balance_in_session(session, user_id)
        finally:
            session.close()

    def list_entries(self, user_id: int, escrow_id: Optional[int] = None) -> List[WalletLedgerEntry]:
        session = self.session_factory()
        try:
            stmt = (
                select(WalletLedgerEntry)
                .join(Wallet, Wallet.id == WalletLedgerEntry.wallet_id)
                .where(Wallet.user_id == user_id)
                .order_by(WalletLedgerEntry.id)
            )
            if escrow_id is not None:
                stmt = stmt.where(WalletLedgerEntry.escrow_id == escrow_id)
            return list(session.execute(stmt).scalars())
        finally:
            session.close()

    def entries_for_escrow(self, escrow_id: int) -> List[WalletLedgerEntry]:
        session = self.session_factory()
        try:
            return list(session.execute(
                select(WalletLedgerEntry)
                .where(WalletLedgerEntry.escrow_id == escrow_id)
                .order_by(WalletLedgerEntry.id)
            ).scalars())
        finally:
            session.close()
