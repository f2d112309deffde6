"""
Account management module for synced accounts and transactions.

This module persists provider snapshots through the batch writer, serves
account and transaction reads, and applies the user-side transaction edits:
metadata (notes, tags, hidden flag), category overrides, and manually
entered cash transactions. Disconnecting an account is the only operation
that bulk-deletes transactions.
"""

import logging
from datetime import date
from typing import List, Optional, Sequence

from auth_state import AuthState
from batch_writer import BatchResult, BatchWriter, CancelCheck, ProgressCallback
from database_ops import (
    ACCOUNTS,
    TRANSACTIONS,
    DocumentStore,
    FieldFilter,
    WriteOp,
    collection_path,
    document_path,
)
from exceptions import NotFoundError, ValidationError
from models import Account, Transaction, next_month_start, parse_month_key

# Configure logging
logger = logging.getLogger(__name__)


class AccountManager:
    """
    Manages the signed-in user's accounts and transactions in the document store.

    Sync writes restate only provider fields, so metadata edited by the user
    survives every re-sync.
    """

    def __init__(self, store: DocumentStore, auth: AuthState, batch_writer: BatchWriter):
        """
        Initialize the account manager.

        Args:
            store: Document store
            auth: Authentication state
            batch_writer: Writer used for snapshot syncs and bulk deletes
        """
        self.store = store
        self.auth = auth
        self.batch_writer = batch_writer
        logger.info("Account manager initialized")

    async def sync_accounts(
        self,
        accounts: Sequence[Account],
        *,
        progress: Optional[ProgressCallback] = None,
        base: float = 0.0,
        span: float = 1.0,
        should_cancel: Optional[CancelCheck] = None
    ) -> BatchResult:
        """Merge-upsert an account snapshot keyed by provider id."""
        user_id = self.auth.require_user_id()
        result = await self.batch_writer.write(
            accounts,
            lambda account: document_path(user_id, ACCOUNTS, account.id),
            lambda account: account.to_document(),
            progress=progress,
            base=base,
            span=span,
            should_cancel=should_cancel,
        )
        logger.info(f"Synced {result.total_records} accounts in {result.total_batches} batches")
        return result

    async def sync_transactions(
        self,
        transactions: Sequence[Transaction],
        *,
        progress: Optional[ProgressCallback] = None,
        base: float = 0.0,
        span: float = 1.0,
        should_cancel: Optional[CancelCheck] = None
    ) -> BatchResult:
        """Merge-upsert a transaction snapshot keyed by provider id."""
        user_id = self.auth.require_user_id()
        result = await self.batch_writer.write(
            transactions,
            lambda txn: document_path(user_id, TRANSACTIONS, txn.id),
            lambda txn: txn.to_document(),
            progress=progress,
            base=base,
            span=span,
            should_cancel=should_cancel,
        )
        logger.info(f"Synced {result.total_records} transactions in {result.total_batches} batches")
        return result

    async def list_accounts(self) -> List[Account]:
        user_id = self.auth.require_user_id()
        documents = await self.store.query(collection_path(user_id, ACCOUNTS))
        return [Account.from_document(doc.id, doc.data) for doc in documents]

    async def get_transaction(self, transaction_id: str) -> Transaction:
        """
        Fetch one transaction.

        Raises:
            NotFoundError: If the transaction does not exist
        """
        user_id = self.auth.require_user_id()
        data = await self.store.get(document_path(user_id, TRANSACTIONS, transaction_id))
        if data is None:
            raise NotFoundError("Transaction not found", details={"transaction_id": transaction_id})
        return Transaction.from_document(transaction_id, data)

    async def list_transactions(
        self,
        month: Optional[str] = None,
        include_hidden: bool = True
    ) -> List[Transaction]:
        """
        List stored transactions, newest first.

        Args:
            month: Optional "YYYY-MM" key restricting the result to one month
            include_hidden: Whether to include transactions the user hid

        Returns:
            List of Transaction objects
        """
        user_id = self.auth.require_user_id()
        filters = []
        if month is not None:
            first = parse_month_key(month)
            filters.append(FieldFilter("date", ">=", first.isoformat()))
            filters.append(FieldFilter("date", "<", next_month_start(first).isoformat()))
        documents = await self.store.query(collection_path(user_id, TRANSACTIONS), filters)
        transactions = [Transaction.from_document(doc.id, doc.data) for doc in documents]
        if not include_hidden:
            transactions = [txn for txn in transactions if not txn.is_hidden]
        return sorted(transactions, key=lambda txn: (txn.date, txn.id), reverse=True)

    async def add_cash_transaction(
        self,
        name: str,
        amount: float,
        on: date,
        category: str,
        notes: Optional[str] = None
    ) -> Transaction:
        """
        Record a manually entered cash transaction.

        Raises:
            ValidationError: If the name is empty or the amount is zero
        """
        user_id = self.auth.require_user_id()
        if not (name or "").strip():
            raise ValidationError("Transaction name is required")
        if amount == 0:
            raise ValidationError("Transaction amount cannot be zero")
        transaction = Transaction.cash(name.strip(), amount, on, category, notes=notes)
        await self.store.set_merge(
            document_path(user_id, TRANSACTIONS, transaction.id),
            transaction.to_document(include_metadata=True)
        )
        logger.info(f"Added cash transaction {transaction.id}: ${transaction.amount:.2f}")
        return transaction

    async def update_transaction_details(
        self,
        transaction_id: str,
        notes: Optional[str] = None,
        tags: Optional[List[str]] = None,
        is_hidden: Optional[bool] = None
    ) -> Transaction:
        """
        Merge user metadata into an existing transaction.

        Only the arguments that are not None are written.

        Raises:
            NotFoundError: If the transaction does not exist
        """
        transaction = await self.get_transaction(transaction_id)
        fields = {}
        if notes is not None:
            fields["notes"] = notes
            transaction.notes = notes
        if tags is not None:
            fields["tags"] = list(tags)
            transaction.tags = list(tags)
        if is_hidden is not None:
            fields["isHidden"] = is_hidden
            transaction.is_hidden = is_hidden
        if fields:
            user_id = self.auth.require_user_id()
            await self.store.set_merge(document_path(user_id, TRANSACTIONS, transaction_id), fields)
            logger.info(f"Updated details of transaction {transaction_id}: {sorted(fields)}")
        return transaction

    async def update_transaction_category(self, transaction_id: str, category: str) -> Transaction:
        """
        Override the category of an existing transaction.

        The override is kept beside the provider label, which sync keeps
        restating, and takes precedence wherever the category is mapped.

        Raises:
            ValidationError: If the category is empty
            NotFoundError: If the transaction does not exist
        """
        category = (category or "").strip()
        if not category:
            raise ValidationError("Category is required", details={"transaction_id": transaction_id})
        transaction = await self.get_transaction(transaction_id)
        transaction.category_override = category
        user_id = self.auth.require_user_id()
        await self.store.set_merge(
            document_path(user_id, TRANSACTIONS, transaction_id),
            {"categoryOverride": category}
        )
        logger.info(f"Set category of transaction {transaction_id} to '{category}'")
        return transaction

    async def disconnect_account(self, account_id: str) -> int:
        """
        Delete an account and every transaction it owns, in bounded batches.

        Returns:
            Number of transactions deleted

        Raises:
            NotFoundError: If the account does not exist
        """
        user_id = self.auth.require_user_id()
        account_path = document_path(user_id, ACCOUNTS, account_id)
        if await self.store.get(account_path) is None:
            raise NotFoundError("Account not found", details={"account_id": account_id})

        owned = await self.store.query(
            collection_path(user_id, TRANSACTIONS),
            [FieldFilter("accountId", "==", account_id)]
        )
        ops = [WriteOp.delete(doc.path) for doc in owned]
        ops.append(WriteOp.delete(account_path))
        await self.batch_writer.commit_ops(ops)
        logger.info(f"Disconnected account {account_id}; deleted {len(owned)} transactions")
        return len(owned)
