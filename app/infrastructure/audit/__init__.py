"""
Audit logging infrastructure for enrollment transition history.
"""

from app.infrastructure.audit.audit_logger import EnrollmentAuditLogger, audit_logger

__all__ = ["EnrollmentAuditLogger", "audit_logger"]
