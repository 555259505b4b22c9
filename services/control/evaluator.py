"""
Remote script evaluation against the live dashboard page.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Optional

from services.control.normalizer import normalize
from shared.logging.logger import get_logger

log = get_logger("control.evaluator")

_STATEMENT_MARKERS = re.compile(r"return|await")


@dataclass(frozen=True)
class PendingEvalJob:
    job_id: str
    code: str

    @classmethod
    def from_payload(cls, data: Any) -> Optional["PendingEvalJob"]:
        """
        Build a job from an eval request payload; None when id or code is missing.
        """
        if not isinstance(data, dict):
            return None

        job_id = data.get("id")
        code = data.get("code")
        if not job_id or not code or not isinstance(code, str):
            return None

        return cls(job_id=str(job_id), code=code)


def wrap_script(code: str) -> str:
    """
    Wrap statement-style snippets in an immediately invoked async closure.

    Plain expressions pass through untouched.
    """
    if _STATEMENT_MARKERS.search(code):
        return f"(async () => {{ {code} }})()"
    return code


async def run_script(page: Any, code: str) -> str:
    """
    Evaluate code in the page and return the normalized result.

    Script faults are returned as the result string, never raised.
    """
    script = wrap_script(code)
    log.debug(f"Evaluating script: {script}")

    try:
        result = await normalize(page.evaluate(script))
    except Exception as e:
        result = getattr(e, "message", None) or str(e)

    log.debug(f"Script evaluated: {result}")
    return result
