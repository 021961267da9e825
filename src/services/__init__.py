"""Custody, trading and external integration services"""
from .encryption_service import EncryptionService
from .session_credential_service import SessionCredentialService
from .master_seed_service import MasterSeedRegistry
from .wallet_service import WalletService
from .auth_service import AuthService
from .audit_service import AuditLogger
from .trade_service import TradeService, ExitDecision

__all__ = [
    'EncryptionService',
    'SessionCredentialService',
    'MasterSeedRegistry',
    'WalletService',
    'AuthService',
    'AuditLogger',
    'TradeService',
    'ExitDecision',
]
