"""Load test profiles from JSON script files.

A script file describes one test type::

    {
      "name": "ADC",
      "special_checks": {
        "ain6": {"kind": "voltage_range", "token": "AIN6", "minimum": 1215, "maximum": 1235}
      },
      "termination_conditions": [{"kind": "error_marker"}],
      "instructions": [
        {"text": "Power the board", "check_required": false},
        {"text": "Boot from SD", "desired_output": "MMCSD boot", "terminal": "BOOT"},
        {"text": "AIN6 in range", "desired_output": "AIN6", "terminal": "MAIN",
         "special_check": "ain6"}
      ]
    }

Special-check and termination-condition kinds map onto the classes in
``test_assistant.checks``; every other key of those objects is passed to the
constructor as a keyword argument.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Union

from .checks import SPECIAL_CHECK_TYPES, TERMINATION_TYPES, SpecialCheck, TerminationCondition
from .exceptions import ScriptError
from .instructions import Instruction
from .sequencer import TestProfile
from .types import Channel

logger = logging.getLogger("test_assistant.script_loader")

_INSTRUCTION_FIELDS = {
    "text",
    "desired_output",
    "check_required",
    "terminal",
    "check_boot_connected",
    "check_main_connected",
    "special_check",
    "user_ack_required",
    "checkbox_text",
    "suppress_on_match",
    "send_on_match",
    "starts_timer",
    "error_text",
}

# Keyword arguments that hold channel names in termination conditions
_CHANNEL_ARGS = {"channel", "channels"}


def load_profile(path: Union[str, Path]) -> TestProfile:
    """Read a JSON script file into a ``TestProfile``.

    Raises:
        ScriptError: If the file cannot be read, is not valid JSON or does
            not describe a valid test.
    """
    p = Path(path)
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except OSError as exc:
        msg = f"Cannot read test script {p}: {exc}"
        logger.error("[SCRIPT] %s", msg)
        raise ScriptError(msg, source=str(p)) from exc
    except json.JSONDecodeError as exc:
        msg = f"Test script {p} is not valid JSON: {exc}"
        logger.error("[SCRIPT] %s", msg)
        raise ScriptError(msg, source=str(p)) from exc

    profile = profile_from_dict(data, source=str(p))
    logger.info(
        "[SCRIPT] Loaded %s from %s (%d instructions, %d special checks)",
        profile.name, p, len(profile.instructions), len(profile.special_checks),
    )
    return profile


def profile_from_dict(data: Any, source: str = "<dict>") -> TestProfile:
    """Build a ``TestProfile`` from already-parsed script data.

    Raises:
        ScriptError: If the data does not describe a valid test.
    """
    if not isinstance(data, dict):
        raise ScriptError(f"{source}: a test script must be a JSON object.", source=source)

    name = data.get("name")
    if not isinstance(name, str) or not name:
        raise ScriptError(f"{source}: \"name\" must be a non-empty string.", source=source)

    raw_instructions = data.get("instructions")
    if not isinstance(raw_instructions, list):
        raise ScriptError(f"{source}: \"instructions\" must be a list.", source=source)

    instructions = [
        _instruction_from_dict(item, f"{source}: instruction {index}")
        for index, item in enumerate(raw_instructions)
    ]

    special_checks: Dict[str, SpecialCheck] = {}
    for key, spec in (data.get("special_checks") or {}).items():
        special_checks[key] = _build(spec, SPECIAL_CHECK_TYPES, f"{source}: special check {key!r}")

    conditions: List[TerminationCondition] = [
        _build(spec, TERMINATION_TYPES, f"{source}: termination condition {index}")
        for index, spec in enumerate(data.get("termination_conditions") or [])
    ]

    try:
        return TestProfile(
            name=name,
            instructions=instructions,
            special_checks=special_checks,
            termination_conditions=conditions,
        )
    except ScriptError as exc:
        raise ScriptError(f"{source}: {exc}", source=source) from exc


def _instruction_from_dict(item: Any, where: str) -> Instruction:
    if not isinstance(item, dict):
        raise ScriptError(f"{where}: must be a JSON object.", source=where)
    unknown = set(item) - _INSTRUCTION_FIELDS
    if unknown:
        raise ScriptError(f"{where}: unknown fields {sorted(unknown)}.", source=where)
    if "text" not in item:
        raise ScriptError(f"{where}: missing \"text\".", source=where)

    fields = dict(item)
    fields["terminal"] = _channel(fields.get("terminal", "NONE"), where)
    if "send_on_match" in fields:
        send = fields["send_on_match"]
        fields["send_on_match"] = (send,) if isinstance(send, str) else tuple(send)
    try:
        return Instruction(**fields)
    except TypeError as exc:
        raise ScriptError(f"{where}: {exc}", source=where) from exc


def _channel(value: Any, where: str) -> Channel:
    try:
        return Channel(str(value).upper())
    except ValueError as exc:
        raise ScriptError(
            f"{where}: unknown terminal {value!r}. Use MAIN, BOOT or NONE.", source=where,
        ) from exc


def _build(spec: Any, registry: Dict[str, type], where: str) -> Any:
    if not isinstance(spec, dict) or "kind" not in spec:
        raise ScriptError(f"{where}: must be an object with a \"kind\".", source=where)
    kwargs = dict(spec)
    kind = kwargs.pop("kind")
    cls = registry.get(kind)
    if cls is None:
        raise ScriptError(
            f"{where}: unknown kind {kind!r}. Known kinds: {sorted(registry)}.", source=where,
        )
    for arg in _CHANNEL_ARGS & set(kwargs):
        value = kwargs[arg]
        if isinstance(value, list):
            kwargs[arg] = tuple(_channel(v, where) for v in value)
        else:
            kwargs[arg] = _channel(value, where)
    try:
        return cls(**kwargs)
    except (TypeError, ValueError) as exc:
        raise ScriptError(f"{where}: {exc}", source=where) from exc
