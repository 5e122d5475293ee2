"""
isokv: In-process transactional key-value store with SQL isolation levels.

Sessions interleave reads and writes against a shared multi-version store;
each transaction sees and locks rows according to its isolation level.
"""

from .aio import AsyncSession
from .config import EngineConfig
from .engine import Engine
from .enums import IsolationLevel, LockMode, TransactionStatus
from .exceptions import (
    DatabaseError,
    DeadlockAbortedError,
    DuplicateKeyError,
    EngineClosedError,
    Error,
    IntegrityError,
    InterfaceError,
    InternalError,
    InvalidTransactionStateError,
    LockTimeoutError,
    NotFoundError,
    OperationalError,
    ProgrammingError,
    SerializationConflictError,
    SessionClosedError,
    TransactionAbortedError,
    Warning,
)
from .isolation import IsolationPolicy, policy_for
from .predicates import Key, Predicate
from .session import Session
from .transactions import Transaction

__version__ = "0.1.0"

__all__ = [
    # Engine and sessions
    "Engine",
    "EngineConfig",
    "Session",
    "AsyncSession",
    "Transaction",
    # Isolation
    "IsolationLevel",
    "IsolationPolicy",
    "policy_for",
    "LockMode",
    "TransactionStatus",
    # Keys and ranges
    "Key",
    "Predicate",
    # Engine exceptions
    "TransactionAbortedError",
    "LockTimeoutError",
    "DeadlockAbortedError",
    "SerializationConflictError",
    "NotFoundError",
    "DuplicateKeyError",
    "SessionClosedError",
    "EngineClosedError",
    "InvalidTransactionStateError",
    # PEP 249 exceptions
    "Error",
    "Warning",
    "DatabaseError",
    "IntegrityError",
    "InterfaceError",
    "InternalError",
    "OperationalError",
    "ProgrammingError",
    # Version
    "__version__",
]
