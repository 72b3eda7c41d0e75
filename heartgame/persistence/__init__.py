"""
Persistence layer for the HeartGame quiz.

Provides SQLite-based storage for accounts and game sessions, with a
shared connection, transactional and retrying execution, and idempotent
first-run bootstrap.
"""

from heartgame.persistence.errors import (
    PersistenceError,
    StoreConnectionError,
    TransientStoreError,
    ConstraintViolation,
    TransactionError,
    classify_error,
)
from heartgame.persistence.models import (
    Account,
    GameSession,
)
from heartgame.persistence.database import (
    ConnectionConfig,
    ConnectionManager,
    get_connection_manager,
    init_connection_manager,
)
from heartgame.persistence.harness import (
    OperationResult,
    RetryPolicy,
    TransactionHarness,
)
from heartgame.persistence.accounts import AccountRepository
from heartgame.persistence.sessions import SessionRepository
from heartgame.persistence.seed import default_seed, load_seed
from heartgame.persistence.backup import export_backup


__all__ = [
    # Errors
    "PersistenceError",
    "StoreConnectionError",
    "TransientStoreError",
    "ConstraintViolation",
    "TransactionError",
    "classify_error",
    
    # Models
    "Account",
    "GameSession",
    
    # Connection
    "ConnectionConfig",
    "ConnectionManager",
    "get_connection_manager",
    "init_connection_manager",
    
    # Execution
    "OperationResult",
    "RetryPolicy",
    "TransactionHarness",
    
    # Repositories
    "AccountRepository",
    "SessionRepository",
    
    # Seed and backup
    "default_seed",
    "load_seed",
    "export_backup",
]
