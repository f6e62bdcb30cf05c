# =============================================================================
# sync_core/offline/codec.py
# JSON Serialization for Cached Payloads and Pending Actions
# =============================================================================
"""
Tagged JSON codec.

Cached values are stored as ``{"type": <tag>, "v": 1, "value": ...}``.
DataFrames keep their column order under the ``dataframe`` tag; every other
value is normalized to plain JSON under the ``json`` tag. Decoding problems
raise PayloadDecodeError so callers can treat them as a cache miss.
"""

from __future__ import annotations
import dataclasses
import json
import math
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Union

import numpy as np
import pandas as pd

from sync_core.errors import PayloadDecodeError
from sync_core.offline.models import (
    ActionPayload,
    GenericPayload,
    PAYLOAD_TYPES,
    PendingActionKind,
    kind_name,
)

CODEC_VERSION = 1
TAG_JSON = "json"
TAG_DATAFRAME = "dataframe"


def normalize(obj: Any) -> Any:
    """Convert numpy, pandas, datetime, enum and dataclass values to plain JSON types."""
    if obj is None or isinstance(obj, (str, bool)):
        return obj
    if isinstance(obj, Enum):
        return normalize(obj.value)
    if isinstance(obj, (np.bool_,)):
        return bool(obj)
    if isinstance(obj, (np.integer,)):
        return int(obj)
    if isinstance(obj, (float, np.floating)):
        value = float(obj)
        return None if math.isnan(value) or math.isinf(value) else value
    if isinstance(obj, int):
        return obj
    if isinstance(obj, (pd.Timestamp, datetime, date)):
        return obj.isoformat()
    if isinstance(obj, np.ndarray):
        return [normalize(v) for v in obj.tolist()]
    if isinstance(obj, pd.DataFrame):
        return [normalize(r) for r in obj.to_dict(orient="records")]
    if isinstance(obj, pd.Series):
        return [normalize(v) for v in obj.tolist()]
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        if hasattr(obj, "to_dict"):
            return normalize(obj.to_dict())
        return normalize(dataclasses.asdict(obj))
    if isinstance(obj, dict):
        return {str(k): normalize(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set, frozenset)):
        return [normalize(v) for v in obj]
    try:
        if pd.isna(obj):
            return None
    except (TypeError, ValueError):
        pass
    raise TypeError(f"Value of type {type(obj).__name__} is not serializable")


def encode_value(value: Any) -> str:
    """Serialize a cacheable value to tagged JSON text."""
    if isinstance(value, pd.DataFrame):
        body = {
            "columns": [str(c) for c in value.columns],
            "records": normalize(value),
        }
        tag = TAG_DATAFRAME
    else:
        body = normalize(value)
        tag = TAG_JSON

    return json.dumps({"type": tag, "v": CODEC_VERSION, "value": body}, separators=(",", ":"))


def decode_value(text: Union[str, bytes]) -> Any:
    """Deserialize tagged JSON text produced by ``encode_value``."""
    try:
        envelope = json.loads(text)
    except (TypeError, ValueError) as e:
        raise PayloadDecodeError(f"Payload is not valid JSON: {e}")

    if not isinstance(envelope, dict) or "type" not in envelope or "value" not in envelope:
        raise PayloadDecodeError("Payload envelope is missing 'type' or 'value'")

    version = envelope.get("v", CODEC_VERSION)
    if version != CODEC_VERSION:
        raise PayloadDecodeError(
            f"Unsupported payload version {version}",
            tag=str(envelope.get("type")),
        )

    tag = envelope["type"]
    body = envelope["value"]

    if tag == TAG_JSON:
        return body
    if tag == TAG_DATAFRAME:
        try:
            return pd.DataFrame(body["records"], columns=body["columns"])
        except (KeyError, TypeError, ValueError) as e:
            raise PayloadDecodeError(f"Malformed dataframe payload: {e}", tag=tag)

    raise PayloadDecodeError(f"Unknown payload tag '{tag}'", tag=str(tag))


# =============================================================================
# PENDING ACTION PAYLOADS
# =============================================================================

def coerce_action_payload(
    kind: Union[PendingActionKind, str],
    payload: Union[ActionPayload, Dict[str, Any]],
) -> ActionPayload:
    """
    Return the typed payload variant for ``kind``.

    Dicts are parsed against the kind's schema; typed payloads must match
    the kind. Schema violations raise PayloadDecodeError.
    """
    name = kind_name(kind)
    expected = PAYLOAD_TYPES.get(name, GenericPayload)

    if isinstance(payload, expected):
        return payload
    if isinstance(payload, dict):
        try:
            return expected.from_dict(payload)
        except (KeyError, TypeError, ValueError) as e:
            raise PayloadDecodeError(
                f"Payload does not match schema for '{name}': {e}",
                tag=name,
            )

    raise PayloadDecodeError(
        f"Payload of type {type(payload).__name__} does not match kind '{name}'",
        tag=name,
    )


def encode_action_payload(kind: Union[PendingActionKind, str], payload: ActionPayload) -> str:
    """Serialize an action payload for the queue table."""
    return json.dumps(normalize(coerce_action_payload(kind, payload).to_dict()))


def decode_action_payload(kind: str, text: str) -> ActionPayload:
    """Parse a queued action payload back into its typed variant."""
    try:
        data = json.loads(text) if text else {}
    except (TypeError, ValueError) as e:
        raise PayloadDecodeError(f"Action payload is not valid JSON: {e}", tag=kind)

    if not isinstance(data, dict):
        raise PayloadDecodeError("Action payload must be a JSON object", tag=kind)

    return coerce_action_payload(kind, data)
