"""
Classification of inbound robot payloads.

Robots publish a mix of formats on the same topic: a JSON envelope
``{"type": ..., "message": ...}``, the "Half cycle finished" sentinel,
free text carrying telemetry (``voltage: 12``, ``mode=auto``,
``message_status:{voltage:12,cycles:3}``) and plain status lines.
First match wins, in that order.
"""

import json
import re
from typing import Optional

from fleetbridge.config import CONFIG
from fleetbridge.models import (
    ClassifiedEvent,
    KIND_ENVELOPE,
    KIND_HALF_CYCLE,
    KIND_STATUS,
    KIND_TEXT,
    SEVERITY_ALERT,
    SEVERITY_INFO,
)
from fleetbridge.session import RESTRICTED_ROLE

HALF_CYCLE_PHRASES = ("half cycle finished", "half-cycle finished")

ALERT_TYPES = ("alert", "error", "warning")

_VOLTAGE_PATTERNS = [
    re.compile(r"voltage:\s*(\d+)", re.I),
    re.compile(r"voltage\s*=\s*(\d+)", re.I),
    re.compile(r'"voltage":\s*(\d+)', re.I),
    re.compile(r"volt.*?(\d+)", re.I),
]

_MODE_PATTERNS = [
    re.compile(r"mode:\s*([a-zA-Z]+)", re.I),
    re.compile(r"mode\s*=\s*([a-zA-Z]+)", re.I),
    re.compile(r'"mode":\s*"([a-zA-Z]+)"', re.I),
    re.compile(r"status:\s*([a-zA-Z]+)", re.I),
]

_CYCLES_PATTERNS = [
    re.compile(r"cycles:\s*(\d+(?:\.\d+)?)", re.I),
    re.compile(r"cycles\s*=\s*(\d+(?:\.\d+)?)", re.I),
    re.compile(r'"cycles":\s*(\d+(?:\.\d+)?)', re.I),
    re.compile(r"cycle.*?(\d+(?:\.\d+)?)", re.I),
]

_STATUS_BLOCK = re.compile(r"message_status:\s*\{([^}]+)\}", re.I)
_BLOCK_VOLTAGE = re.compile(r"voltage:\s*(\d+)", re.I)
_BLOCK_MODE = re.compile(r"mode:\s*([a-zA-Z]+)", re.I)
_BLOCK_CYCLES = re.compile(r"cycles:\s*(\d+(?:\.\d+)?)", re.I)

# Keyword heuristic used for the feed's isAlert flag and toast styling
_ALERT_KEYWORDS = (
    "error", "alert", "warning", "critical", "fatal", "fail", "stopped",
    "emergency", "fault", "danger", "issue", "problem", "shutdown", "offline",
    "alarm", "malfunction", "broken",
)
_INFO_KEYWORDS = (
    "info", "started", "running", "online", "completed", "success", "ready",
    "normal", "ok", "initialized", "connected", "active", "operational",
)
_ERROR_TOAST_KEYWORDS = ("alert", "error", "critical", "warning", "fail")


def unwrap(payload: str) -> str:
    """Trim and strip one layer of wrapping double quotes."""
    text = payload.strip() if isinstance(payload, str) else str(payload)
    if len(text) >= 2 and text.startswith('"') and text.endswith('"'):
        text = text[1:-1]
    return text


def _first_match(patterns, text: str) -> Optional[str]:
    for pattern in patterns:
        m = pattern.search(text)
        if m and m.group(1):
            return m.group(1)
    return None


def parse_envelope(text: str) -> Optional[tuple]:
    """``(type, message)`` if *text* is a JSON object carrying both fields."""
    try:
        parsed = json.loads(text)
    except (json.JSONDecodeError, ValueError, TypeError):
        return None
    if not isinstance(parsed, dict):
        return None
    msg_type, message = parsed.get("type"), parsed.get("message")
    if not msg_type or not message:
        return None
    return str(msg_type), str(message)


def is_half_cycle(text: str) -> bool:
    lowered = text.lower()
    return any(phrase in lowered for phrase in HALF_CYCLE_PHRASES)


def extract_voltage(text: str) -> Optional[int]:
    value = _first_match(_VOLTAGE_PATTERNS, text)
    return int(value) if value is not None else None


def extract_mode(text: str) -> Optional[str]:
    return _first_match(_MODE_PATTERNS, text)


def extract_cycles(text: str) -> Optional[float]:
    value = _first_match(_CYCLES_PATTERNS, text)
    return float(value) if value is not None else None


def extract_status_fields(text: str, include_cycles: bool = True) -> dict:
    """Pull voltage/mode/cycles out of free text.

    A ``message_status:{...}`` block, when present, overrides the loose
    matches for the fields it carries.
    """
    found = {}
    voltage = extract_voltage(text)
    if voltage is not None:
        found["voltage"] = voltage
    mode = extract_mode(text)
    if mode is not None:
        found["mode"] = mode
    if include_cycles:
        cycles = extract_cycles(text)
        if cycles is not None:
            found["cycles"] = cycles

    block = _STATUS_BLOCK.search(text)
    if block:
        content = block.group(1)
        m = _BLOCK_VOLTAGE.search(content)
        if m:
            found["voltage"] = int(m.group(1))
        m = _BLOCK_MODE.search(content)
        if m:
            found["mode"] = m.group(1)
        if include_cycles:
            m = _BLOCK_CYCLES.search(content)
            if m:
                found["cycles"] = float(m.group(1))
    return found


def is_alert_text(message: str) -> bool:
    lowered = (message or "").lower()
    has_alert = any(k in lowered for k in _ALERT_KEYWORDS)
    has_info = any(k in lowered for k in _INFO_KEYWORDS)
    return has_alert and not has_info


def wants_error_toast(message: str) -> bool:
    lowered = (message or "").lower()
    return any(k in lowered for k in _ERROR_TOAST_KEYWORDS)


def classify(payload: str, role: Optional[str] = None,
             voltage_threshold: int = None) -> ClassifiedEvent:
    """Decide the shape of *payload* and extract its typed fields.

    ``role`` is the viewer role; the restricted role never gets ``cycles``.
    Any voltage below the threshold escalates severity to alert.
    """
    threshold = voltage_threshold if voltage_threshold is not None else CONFIG["voltage_threshold"]
    text = unwrap(payload)

    envelope = parse_envelope(text)
    if envelope:
        msg_type, message = envelope
        severity = SEVERITY_ALERT if msg_type.lower() in ALERT_TYPES else SEVERITY_INFO
        voltage = extract_voltage(message) if "volt" in message.lower() else None
        if voltage is not None and voltage < threshold:
            severity = SEVERITY_ALERT
        return ClassifiedEvent(KIND_ENVELOPE, message, severity=severity,
                               type=msg_type, voltage=voltage)

    if is_half_cycle(text):
        return ClassifiedEvent(KIND_HALF_CYCLE, text)

    fields = extract_status_fields(text, include_cycles=role != RESTRICTED_ROLE)
    if fields:
        voltage = fields.get("voltage")
        severity = SEVERITY_ALERT if voltage is not None and voltage < threshold else SEVERITY_INFO
        return ClassifiedEvent(KIND_STATUS, text, severity=severity, type=severity,
                               voltage=voltage, mode=fields.get("mode"),
                               cycles=fields.get("cycles"))

    return ClassifiedEvent(KIND_TEXT, text)
