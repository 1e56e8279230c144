"""
Dispute Escalation Monitor
Moves stale self-resolution disputes into mediation and overdue mediations
into arbitration. Each check is idempotent and only fires once per dispute.
"""

import logging
import time
from typing import Any, Dict

logger = logging.getLogger(__name__)


async def run_escalation_check(container) -> Dict[str, Any]:
    """Main entry point for scheduler"""
    start = time.monotonic()
    results: Dict[str, Any] = {"status": "success"}
    try:
        results.update(await container.disputes.process_escalations())
    except Exception as e:
        logger.error(f"❌ Dispute escalation check failed: {e}", exc_info=True)
        results["status"] = "error"
        results["error"] = str(e)
    results["execution_time_ms"] = round((time.monotonic() - start) * 1000, 1)

    if results.get("escalated"):
        logger.info(f"⬆️ ESCALATION: {results['escalated']} disputes escalated")
    return results
