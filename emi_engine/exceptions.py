"""
Domain Exceptions Module

Error taxonomy shared by every component of the engine. All errors are raised
synchronously to the caller and never retried internally.
"""

from typing import Optional


class LoanEngineError(Exception):
    """Base exception for the engine"""
    pass


class InvalidArgumentError(LoanEngineError, ValueError):
    """Bad numeric or structural input (non-positive principal, negative rate, ...)"""
    pass


class NotFoundError(LoanEngineError, LookupError):
    """Unknown loan or installment id"""
    
    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type.capitalize()} {entity_id} not found")


class InvalidStateError(LoanEngineError):
    """Operation attempted against an incompatible lifecycle state"""
    
    def __init__(self, message: str, entity_id: Optional[str] = None):
        self.entity_id = entity_id
        super().__init__(message)


class AlreadyScheduledError(InvalidStateError):
    """Schedule generation requested for a loan that already has installments"""
    
    def __init__(self, loan_id: str):
        super().__init__(f"Loan {loan_id} already has an installment schedule", loan_id)


class LoanTaskTimeoutError(LoanEngineError):
    """A collections job gave up on a loan before its work was committed"""

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(f"timed out after {timeout_seconds}s")
