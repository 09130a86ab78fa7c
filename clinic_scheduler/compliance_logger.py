import logging
from datetime import datetime, timezone
from typing import Optional, Any

from clinic_scheduler import models


class ComplianceLogger:
	"""Writes scheduling events into the AuditLog table, inside the caller's transaction."""

	def __init__(self):
		self.logger = logging.getLogger('clinic_scheduler.audit')

	@staticmethod
	def _coerce_action(action: Any) -> models.AuditAction:
		if isinstance(action, models.AuditAction):
			return action
		action_upper = str(action or '').upper()
		try:
			return models.AuditAction[action_upper]
		except KeyError:
			pass
		# Pattern-based reductions to the stored enum values
		if action_upper.endswith('_CREATE') or action_upper.startswith('CREATE_'):
			return models.AuditAction.CREATE
		if action_upper.endswith('_DELETE') or action_upper.startswith('DELETE_'):
			return models.AuditAction.DELETE
		if 'DENIED' in action_upper:
			return models.AuditAction.ACCESS_DENIED
		if 'BULK' in action_upper or 'BATCH' in action_upper:
			return models.AuditAction.BULK_ACTION
		return models.AuditAction.UPDATE

	def log_event(
		self,
		db,
		ctx,
		action: Any,
		category: str,
		details: Optional[str] = None,
		severity: str = 'INFO',
		resource_type: Optional[str] = None,
		resource_id: Optional[int] = None,
	) -> models.AuditLog:
		"""Adds an audit row to the session; it is committed with the surrounding transaction."""
		db_log = models.AuditLog(
			tenant_id=ctx.tenant_id if ctx else None,
			user_id=ctx.user_id if ctx else None,
			action=self._coerce_action(action),
			category=category or 'GENERAL',
			severity=severity or 'INFO',
			resource_type=resource_type,
			resource_id=resource_id,
			details=details,
			timestamp=datetime.now(timezone.utc),
		)
		db.add(db_log)
		self.logger.info(
			"audit %s %s %s:%s",
			db_log.action.value, db_log.category, resource_type, resource_id,
		)
		return db_log


compliance_logger = ComplianceLogger()
