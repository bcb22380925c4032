"""
Report Codec.

Versioned wire envelope for MachineReport. Text frames carry JSON, binary
frames carry gzip-compressed JSON.
"""

import gzip
from typing import Union

from pydantic import BaseModel, ValidationError

from .errors import SerializationError
from .models import MachineReport

SCHEMA_VERSION = 1


class ReportEnvelope(BaseModel):
    """What actually goes over the wire."""
    schema_version: int = SCHEMA_VERSION
    agent_id: str = ""
    report: MachineReport


def encode_report(
    report: MachineReport,
    agent_id: str = "",
    compress: bool = False,
) -> Union[str, bytes]:
    """Serialize a report. Returns str for JSON, bytes when compressed."""
    try:
        envelope = ReportEnvelope(agent_id=agent_id, report=report)
        payload = envelope.model_dump_json()
    except (ValidationError, ValueError, TypeError) as e:
        raise SerializationError(f"Cannot encode report {report.timestamp}: {e}") from e

    if compress:
        return gzip.compress(payload.encode("utf-8"))
    return payload


def decode_envelope(payload: Union[str, bytes]) -> ReportEnvelope:
    """Parse a wire payload produced by encode_report()."""
    try:
        if isinstance(payload, bytes):
            payload = gzip.decompress(payload).decode("utf-8")
        envelope = ReportEnvelope.model_validate_json(payload)
    except (ValidationError, OSError, EOFError, UnicodeDecodeError) as e:
        raise SerializationError(f"Cannot decode report: {e}") from e

    if envelope.schema_version != SCHEMA_VERSION:
        raise SerializationError(
            f"Unsupported schema version {envelope.schema_version} "
            f"(expected {SCHEMA_VERSION})"
        )
    return envelope


def decode_report(payload: Union[str, bytes]) -> MachineReport:
    """Parse a wire payload and return only the report."""
    return decode_envelope(payload).report
