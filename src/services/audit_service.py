"""
Audit logging service

Append-only, best-effort: every entry is written in its own session so a
failed business transaction cannot take the audit row down with it, and a
failed audit write never propagates to the caller.
"""

from typing import Any, Optional

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.core.enums import AuditAction
from src.database.crud import create_audit_log


class AuditLogger:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def log(
        self,
        action: AuditAction | str,
        user_id: Optional[int] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[Any] = None,
        details: Optional[dict] = None,
    ) -> bool:
        """
        Write an audit entry

        Returns:
            True if the entry was stored
        """
        action_name = action.value if isinstance(action, AuditAction) else str(action)
        try:
            async with self.session_maker() as session:
                await create_audit_log(
                    session,
                    action=action_name,
                    user_id=user_id,
                    resource_type=resource_type,
                    resource_id=str(resource_id) if resource_id is not None else None,
                    details=details or {},
                )
            return True
        except Exception as e:
            logger.error(f"Audit log write failed ({action_name}, user {user_id}): {e}")
            return False
