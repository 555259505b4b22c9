"""
Eval result normalization.

Turns whatever a remote evaluation produced into the single string sent back
over the bus. Precedence:

1. exceptions        -> "<Kind>: <message>"
2. awaitables        -> normalized resolved value
3. lists / tuples    -> normalized elements joined with ", "
4. callables, enums  -> str(value)
5. everything else   -> JSON
"""

from __future__ import annotations

import inspect
import json
from enum import Enum
from typing import Any

from playwright.async_api import Error as PlaywrightError


def _fault_kind(fault: BaseException) -> str:
    # JS faults keep their own kind (TypeError, ReferenceError) in .name
    if isinstance(fault, PlaywrightError):
        name = fault.name
        if isinstance(name, str) and name:
            return name
    return type(fault).__name__


def _fault_message(fault: BaseException) -> str:
    # Playwright errors carry the JS message separately from the stack
    message = getattr(fault, "message", None)
    if isinstance(message, str) and message:
        return message
    return str(fault)


async def normalize(value: Any) -> str:
    if isinstance(value, BaseException):
        return f"{_fault_kind(value)}: {_fault_message(value)}"

    if inspect.isawaitable(value):
        return await normalize(await value)

    if isinstance(value, (list, tuple)):
        return ", ".join([await normalize(item) for item in value])

    if callable(value) or isinstance(value, Enum):
        return str(value)

    return json.dumps(value, ensure_ascii=False, default=str)
