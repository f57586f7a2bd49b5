"""
Approval Routing Engine
Scheduled Jobs.

Jobs:
    - approval_timeout_sweep: times out overdue active steps across all
      in-progress flows and applies each category's escalation policy
"""

from __future__ import annotations

import logging
from typing import Any

from app.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


@register_job("approval_timeout_sweep")
def sweep_approval_timeouts(app) -> dict[str, Any]:
    """Time out overdue approval steps and escalate or reject their flows."""
    from app.services.approval_flow_service import sweep_timeouts

    result = sweep_timeouts()
    logger.info(
        "approval_timeout_sweep: flows=%s timed_out=%s escalated=%s rejected=%s",
        result["flows_checked"], result["timed_out"], result["escalated"], result["rejected"],
        extra={"job_name": "approval_timeout_sweep"},
    )
    return result
