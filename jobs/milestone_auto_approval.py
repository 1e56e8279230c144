"""
Milestone Auto-Approval Job
Periodic caller of the auto-approval sweep. The sweep itself is idempotent,
so a missed or doubled run never releases a milestone twice.
"""

import logging
import time
from typing import Any, Dict

logger = logging.getLogger(__name__)


async def run_auto_approval(container) -> Dict[str, Any]:
    """Main entry point for scheduler"""
    start = time.monotonic()
    results: Dict[str, Any] = {"status": "success"}
    try:
        results.update(await container.milestones.process_auto_approvals())
    except Exception as e:
        logger.error(f"❌ Auto-approval sweep failed: {e}", exc_info=True)
        results["status"] = "error"
        results["error"] = str(e)
    results["execution_time_ms"] = round((time.monotonic() - start) * 1000, 1)

    if results.get("approved") or results.get("warned"):
        logger.info(
            f"✅ AUTO_APPROVAL: approved={results['approved']} warned={results['warned']} "
            f"in {results['execution_time_ms']}ms"
        )
    return results
