"""Bridge to the out-of-process hardware inventory tool (``system_profiler``).

Queries block for the lifetime of the child process, often hundreds of
milliseconds or more, so only background tasks may call ``query_inventory``.
"""

from __future__ import annotations

from collections.abc import Iterable
import json
import logging
import re
import subprocess
from typing import Any, Union

from cpuy.logging_utils import TRACE_LEVEL

JsonValue = Union[None, bool, int, float, str, list["JsonValue"], dict[str, "JsonValue"]]
Document = dict[str, JsonValue]

HARDWARE = "SPHardwareDataType"
DISPLAYS = "SPDisplaysDataType"
STORAGE = "SPStorageDataType"

_BYTES_PATTERN = re.compile(r"(\d[\d,]*)\s*bytes")

logger = logging.getLogger(__name__)


class InventoryUnavailable(RuntimeError):
    """The inventory tool could not run or returned unusable output."""


def query_inventory(
    categories: Iterable[str],
    *,
    profiler_path: str = "system_profiler",
    timeout_s: float | None = None,
) -> Document:
    command = [profiler_path, "-json", *sorted(set(categories))]
    logger.debug("Running inventory query: %s", " ".join(command))
    try:
        result = subprocess.run(
            command,
            check=False,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            timeout=timeout_s,
        )
    except OSError as exc:
        raise InventoryUnavailable(f"Cannot run {profiler_path}: {exc}") from exc
    except subprocess.TimeoutExpired as exc:
        raise InventoryUnavailable(
            f"{profiler_path} timed out after {timeout_s}s"
        ) from exc
    if result.returncode != 0:
        raise InventoryUnavailable(
            f"{profiler_path} exited with status {result.returncode}"
        )
    if logger.isEnabledFor(TRACE_LEVEL):
        logger.log(TRACE_LEVEL, "Inventory raw payload: %s", result.stdout)
    try:
        document = json.loads(result.stdout)
    except json.JSONDecodeError as exc:
        raise InventoryUnavailable(f"Unparsable {profiler_path} output") from exc
    if not isinstance(document, dict):
        raise InventoryUnavailable(f"Unexpected {profiler_path} output type")
    return document


def array_at(document: Document, key: str) -> list[JsonValue] | None:
    value = document.get(key)
    return value if isinstance(value, list) else None


def first_matching_value(
    document: JsonValue, key_substring: str, max_depth: int = 4
) -> str | None:
    """Return the first string whose key contains ``key_substring``.

    Keys are compared case-insensitively. Each mapping's own keys are checked
    in insertion order before any nested container is entered, and the
    search stops ``max_depth`` containers below ``document``.
    """
    needle = key_substring.lower()

    def walk(node: JsonValue, depth: int) -> str | None:
        if depth > max_depth:
            return None
        if isinstance(node, dict):
            for key, value in node.items():
                if isinstance(value, str) and needle in key.lower():
                    return value
            children: Iterable[Any] = node.values()
        elif isinstance(node, list):
            children = node
        else:
            return None
        for child in children:
            if isinstance(child, (dict, list)):
                found = walk(child, depth + 1)
                if found is not None:
                    return found
        return None

    return walk(document, 0)


def parse_byte_size(text: str) -> int | None:
    """Extract the byte count from strings like ``"500.28 GB (500,277,790,720 bytes)"``."""
    match = _BYTES_PATTERN.search(text)
    if match is None:
        return None
    return int(match.group(1).replace(",", ""))
