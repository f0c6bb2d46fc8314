"""Core module - Shared configuration, types and credential crypto."""

from bucketsync.core.config import AgentConfig, ServerConfig
from bucketsync.core.crypto import CredentialError, decrypt_credential, encrypt_credential
from bucketsync.core.types import (
    ActivityAction,
    ActivityStatus,
    SchedulerState,
    SyncCursorStatus,
    TransferKind,
    TransferStatus,
)

__all__ = [
    # Config
    "AgentConfig",
    "ServerConfig",
    # Crypto
    "CredentialError",
    "decrypt_credential",
    "encrypt_credential",
    # Types
    "ActivityAction",
    "ActivityStatus",
    "SchedulerState",
    "SyncCursorStatus",
    "TransferKind",
    "TransferStatus",
]
