"""
Repository Module

Persistence contract consumed by the engine and an in-memory implementation
for testing and embedding. The engine never issues raw queries; it only uses
the set-returning operations defined here. Records cross the storage
boundary as JSON-safe dictionaries (Decimals as strings, dates ISO-formatted).
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Tuple
import json
import threading

from .models import Loan, Installment, LoanStatus, SETTLED_STATUSES


class LoanRepository(ABC):
    """Abstract persistence contract for the loan aggregate"""

    @abstractmethod
    def load_loan(self, loan_id: str) -> Optional[Loan]:
        """Load a loan by id"""
        pass

    @abstractmethod
    def save_loan(self, loan: Loan) -> None:
        """Insert or replace a loan"""
        pass

    @abstractmethod
    def load_installment(self, installment_id: str) -> Optional[Installment]:
        """Load a single installment by id"""
        pass

    @abstractmethod
    def load_installments(self, loan_id: str) -> List[Installment]:
        """Load a loan's installments ordered by installment number"""
        pass

    @abstractmethod
    def save_installments(self, installments: Iterable[Installment]) -> None:
        """Insert or replace installments"""
        pass

    @abstractmethod
    def find_overdue_installments(self, as_of: date) -> List[Installment]:
        """Installments due before as_of that are neither paid nor waived"""
        pass

    @abstractmethod
    def find_due_in_range(self, start: date, end: date) -> List[Installment]:
        """Installments with start <= due_date <= end, any status"""
        pass

    @abstractmethod
    def find_active_loans(self) -> List[Loan]:
        """Loans in ACTIVE status"""
        pass

    @abstractmethod
    def find_loans_by_borrower(self, borrower_id: str) -> List[Loan]:
        """Every loan ever taken by a borrower"""
        pass

    def begin_transaction(self) -> None:
        """Start a unit of work (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit the current unit of work (default no-op)"""
        pass

    def rollback(self) -> None:
        """Discard the current unit of work (default no-op)"""
        pass

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
            self.commit()
        except Exception:
            self.rollback()
            raise


class InMemoryLoanRepository(LoanRepository):
    """
    In-memory repository

    Writes made inside atomic() are staged per thread and applied on commit,
    so a failed unit of work leaves no partial state and concurrent units on
    different loans do not see or clobber each other's staged writes.
    """

    LOANS = "loans"
    INSTALLMENTS = "installments"

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {
            self.LOANS: {},
            self.INSTALLMENTS: {}
        }
        self._lock = threading.RLock()
        self._local = threading.local()

    # Unit of work

    def _staged(self) -> Optional[Dict[Tuple[str, str], Dict[str, Any]]]:
        return getattr(self._local, "staged", None)

    def begin_transaction(self) -> None:
        depth = getattr(self._local, "depth", 0)
        if depth == 0:
            self._local.staged = {}
        self._local.depth = depth + 1

    def commit(self) -> None:
        self._local.depth -= 1
        if self._local.depth > 0:
            return
        staged = self._local.staged
        self._local.staged = None
        with self._lock:
            for (table, record_id), data in staged.items():
                self._data[table][record_id] = data

    def rollback(self) -> None:
        self._local.depth = 0
        self._local.staged = None

    # Raw record access

    @staticmethod
    def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
        # Deep copy to prevent external mutation
        return json.loads(json.dumps(data, default=str))

    def _put(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        record = self._copy(data)
        staged = self._staged()
        if staged is not None:
            staged[(table, record_id)] = record
            return
        with self._lock:
            self._data[table][record_id] = record

    def _get(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        staged = self._staged()
        if staged is not None and (table, record_id) in staged:
            return self._copy(staged[(table, record_id)])
        with self._lock:
            record = self._data[table].get(record_id)
            return self._copy(record) if record else None

    def _scan(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            records = {key: value for key, value in self._data[table].items()}
        staged = self._staged()
        if staged:
            for (staged_table, record_id), data in staged.items():
                if staged_table == table:
                    records[record_id] = data
        return [self._copy(record) for record in records.values()]

    # Contract

    def load_loan(self, loan_id: str) -> Optional[Loan]:
        data = self._get(self.LOANS, loan_id)
        return Loan.from_dict(data) if data else None

    def save_loan(self, loan: Loan) -> None:
        self._put(self.LOANS, loan.id, loan.to_dict())

    def load_installment(self, installment_id: str) -> Optional[Installment]:
        data = self._get(self.INSTALLMENTS, installment_id)
        return Installment.from_dict(data) if data else None

    def load_installments(self, loan_id: str) -> List[Installment]:
        installments = [
            Installment.from_dict(data)
            for data in self._scan(self.INSTALLMENTS)
            if data['loan_id'] == loan_id
        ]
        installments.sort(key=lambda x: x.installment_number)
        return installments

    def save_installments(self, installments: Iterable[Installment]) -> None:
        for installment in installments:
            self._put(self.INSTALLMENTS, installment.id, installment.to_dict())

    def find_overdue_installments(self, as_of: date) -> List[Installment]:
        result = [
            installment
            for installment in self._all_installments()
            if installment.due_date < as_of and installment.status not in SETTLED_STATUSES
        ]
        result.sort(key=lambda x: (x.due_date, x.loan_id, x.installment_number))
        return result

    def find_due_in_range(self, start: date, end: date) -> List[Installment]:
        result = [
            installment
            for installment in self._all_installments()
            if start <= installment.due_date <= end
        ]
        result.sort(key=lambda x: (x.due_date, x.loan_id, x.installment_number))
        return result

    def find_active_loans(self) -> List[Loan]:
        return [
            Loan.from_dict(data)
            for data in self._scan(self.LOANS)
            if data['status'] == LoanStatus.ACTIVE.value
        ]

    def find_loans_by_borrower(self, borrower_id: str) -> List[Loan]:
        loans = [
            Loan.from_dict(data)
            for data in self._scan(self.LOANS)
            if data['borrower_id'] == borrower_id
        ]
        loans.sort(key=lambda x: x.created_at)
        return loans

    def _all_installments(self) -> List[Installment]:
        return [Installment.from_dict(data) for data in self._scan(self.INSTALLMENTS)]

    def count(self, table: str) -> int:
        """Count committed records in a table"""
        with self._lock:
            return len(self._data[table])
