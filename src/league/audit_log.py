"""
Audit trail of admin and security-relevant actions.

Writing an audit record must never break the operation being audited:
failures are logged and swallowed.
"""
import logging
from typing import Dict, Optional
from sqlalchemy.exc import SQLAlchemyError

from .models import AuditLog, db
from .security import sanitize_input, sanitize_string

logger = logging.getLogger(__name__)


class AUDIT_ACTIONS:
    CREATE_TOURNAMENT = 'CREATE_TOURNAMENT'
    UPDATE_TOURNAMENT = 'UPDATE_TOURNAMENT'
    DELETE_TOURNAMENT = 'DELETE_TOURNAMENT'
    RESTORE_TOURNAMENT = 'RESTORE_TOURNAMENT'
    CREATE_PLAYER = 'CREATE_PLAYER'
    UPDATE_PLAYER = 'UPDATE_PLAYER'
    DELETE_PLAYER = 'DELETE_PLAYER'
    RESTORE_PLAYER = 'RESTORE_PLAYER'
    CREATE_TA_ENTRY = 'CREATE_TA_ENTRY'
    UPDATE_TA_ENTRY = 'UPDATE_TA_ENTRY'
    DELETE_TA_ENTRY = 'DELETE_TA_ENTRY'
    CREATE_BM_MATCH = 'CREATE_BM_MATCH'
    UPDATE_BM_MATCH = 'UPDATE_BM_MATCH'
    DELETE_BM_MATCH = 'DELETE_BM_MATCH'
    CREATE_MR_MATCH = 'CREATE_MR_MATCH'
    UPDATE_MR_MATCH = 'UPDATE_MR_MATCH'
    DELETE_MR_MATCH = 'DELETE_MR_MATCH'
    CREATE_GP_MATCH = 'CREATE_GP_MATCH'
    UPDATE_GP_MATCH = 'UPDATE_GP_MATCH'
    DELETE_GP_MATCH = 'DELETE_GP_MATCH'
    CREATE_BRACKET = 'CREATE_BRACKET'
    REGENERATE_TOKEN = 'REGENERATE_TOKEN'
    INVALIDATE_TOKEN = 'INVALIDATE_TOKEN'
    EXTEND_TOKEN = 'EXTEND_TOKEN'
    TOKEN_VALIDATION = 'TOKEN_VALIDATION'
    LOGIN_SUCCESS = 'LOGIN_SUCCESS'
    LOGIN_FAILURE = 'LOGIN_FAILURE'
    UNAUTHORIZED_ACCESS = 'UNAUTHORIZED_ACCESS'
    REPORT_SCORE = 'REPORT_SCORE'
    PROMOTE_PHASE = 'PROMOTE_PHASE'
    SUBMIT_PHASE_RESULTS = 'SUBMIT_PHASE_RESULTS'


def _clean(value: Optional[str], limit: int = 255) -> Optional[str]:
    if value is None:
        return None
    return sanitize_string(str(value))[:limit]


def create_audit_log(action: str, user_id: Optional[str] = None, ip_address: Optional[str] = None,
                     user_agent: Optional[str] = None, target_id: Optional[str] = None,
                     target_type: Optional[str] = None, details: Optional[Dict] = None) -> Optional[AuditLog]:
    """Persist one audit record. Returns None if it could not be written."""
    entry = AuditLog(
        action=_clean(action, 50),
        user_id=_clean(user_id, 36),
        ip_address=_clean(ip_address, 64),
        user_agent=_clean(user_agent),
        target_id=_clean(target_id, 36),
        target_type=_clean(target_type, 50),
        details=sanitize_input(details) if details else None,
    )
    try:
        db.session.add(entry)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f'Failed to create audit log for {action}: {e.__class__.__name__}')
        return None
    return entry
