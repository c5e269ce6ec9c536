"""
One-shot allowance catch-up for cron and other periodic triggers.

    python -m kidsbank.allowance

Prints {"processed": N, "dates": [...]} and exits 0, or exits 1 with the
error on stderr when the run should be retried later.
"""

import asyncio
import sys

from kidsbank.allowance.scheduler import AllowanceProcessingError
from kidsbank.orchestrator import create_app_components


def main() -> int:
    components = create_app_components()
    try:
        result = asyncio.run(components.scheduler.run())
    except AllowanceProcessingError as e:
        print(str(e), file=sys.stderr)
        return 1
    print(result.model_dump_json())
    return 0


if __name__ == "__main__":
    sys.exit(main())
