"""
Print Submission (IPP)

Encodes IPP/1.1 Print-Job requests and submits them to a print server
(typically CUPS) over HTTP. Only the subset needed to submit a PDF is
implemented.

Request layout:
    version (2 bytes) | operation (2) | request id (4) | operation-attributes tag (1)
    attribute records: value tag (1) | name length (2) | name | value length (2) | value
    end-of-attributes tag (1)
    document bytes
"""

import logging
import re
import secrets
import struct
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import httpx

from app.jobs.errors import PrintSubmissionError

logger = logging.getLogger(__name__)

IPP_VERSION = (1, 1)
OP_PRINT_JOB = 0x0002

TAG_OPERATION_ATTRIBUTES = 0x01
TAG_END_OF_ATTRIBUTES = 0x03

TAG_INTEGER = 0x21
TAG_BOOLEAN = 0x22
TAG_ENUM = 0x23
TAG_NAME_WITHOUT_LANGUAGE = 0x42
TAG_URI = 0x45
TAG_CHARSET = 0x47
TAG_NATURAL_LANGUAGE = 0x48

STATUS_SUCCESS_MAX = 0x00FF

_UNSAFE_DESTINATION = re.compile(r"[^A-Za-z0-9_.-]")


def sanitize_destination(name: str) -> str:
    """Restrict a destination name to characters safe inside a URI path."""
    cleaned = _UNSAFE_DESTINATION.sub("_", (name or "").strip())
    if not cleaned.strip("_."):
        raise ValueError("Invalid print destination")
    return cleaned


def _attribute(tag: int, name: str, value: str) -> bytes:
    name_bytes = name.encode("utf-8")
    value_bytes = value.encode("utf-8")
    return (
        struct.pack(">BH", tag, len(name_bytes)) + name_bytes
        + struct.pack(">H", len(value_bytes)) + value_bytes
    )


def build_print_job_request(
    printer_uri: str,
    user_name: str,
    job_name: str,
    document: bytes,
    request_id: int
) -> bytes:
    """Encode a Print-Job request with the document appended verbatim."""
    header = struct.pack(">BBHIB", IPP_VERSION[0], IPP_VERSION[1], OP_PRINT_JOB, request_id, TAG_OPERATION_ATTRIBUTES)
    attributes = b"".join([
        _attribute(TAG_CHARSET, "attributes-charset", "utf-8"),
        _attribute(TAG_NATURAL_LANGUAGE, "attributes-natural-language", "en"),
        _attribute(TAG_URI, "printer-uri", printer_uri),
        _attribute(TAG_NAME_WITHOUT_LANGUAGE, "requesting-user-name", user_name),
        _attribute(TAG_NAME_WITHOUT_LANGUAGE, "job-name", job_name),
    ])
    return header + attributes + bytes([TAG_END_OF_ATTRIBUTES]) + document


@dataclass
class IppResponse:
    version: Tuple[int, int]
    status_code: int
    request_id: int
    attributes: Dict[str, List[Any]] = field(default_factory=dict)

    def first(self, name: str) -> Any:
        values = self.attributes.get(name)
        return values[0] if values else None


def parse_response(data: bytes) -> IppResponse:
    """Decode an IPP response header and its attribute groups."""
    if len(data) < 8:
        raise PrintSubmissionError("Malformed IPP response")

    major, minor, status_code, request_id = struct.unpack(">BBHI", data[:8])
    attributes: Dict[str, List[Any]] = {}
    last_name: Optional[str] = None
    pos = 8

    try:
        while pos < len(data):
            tag = data[pos]
            pos += 1
            if tag == TAG_END_OF_ATTRIBUTES:
                break
            if tag < 0x10:
                # Start of a new attribute group
                continue

            (name_len,) = struct.unpack(">H", data[pos:pos + 2])
            pos += 2
            name = data[pos:pos + name_len].decode("utf-8")
            pos += name_len
            (value_len,) = struct.unpack(">H", data[pos:pos + 2])
            pos += 2
            raw = data[pos:pos + value_len]
            pos += value_len

            if tag in (TAG_INTEGER, TAG_ENUM) and value_len == 4:
                value: Any = struct.unpack(">i", raw)[0]
            elif tag == TAG_BOOLEAN and value_len == 1:
                value = bool(raw[0])
            else:
                value = raw.decode("utf-8", errors="replace")

            if name:
                last_name = name
                attributes.setdefault(name, []).append(value)
            elif last_name:
                attributes[last_name].append(value)
    except (struct.error, UnicodeDecodeError) as e:
        raise PrintSubmissionError("Malformed IPP response") from e

    return IppResponse(version=(major, minor), status_code=status_code, request_id=request_id, attributes=attributes)


@dataclass
class PrintResult:
    destination: str
    request_id: int
    status_code: int
    print_job_id: Optional[int] = None


class IppPrintClient:
    """Submits documents to `{server_url}/printers/{destination}`."""

    def __init__(self, server_url: str, timeout: float = 30.0, transport: Optional[httpx.BaseTransport] = None):
        self.server_url = server_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def printer_uri(self, destination: str) -> str:
        url = httpx.URL(self.server_url)
        port = url.port or 631
        return f"ipp://{url.host}:{port}/printers/{destination}"

    def submit(self, destination: str, document: bytes, job_name: str, user_name: str) -> PrintResult:
        """Send one Print-Job request. Failures raise PrintSubmissionError verbatim."""
        destination = sanitize_destination(destination)
        request_id = secrets.randbelow(2 ** 31 - 1) + 1
        body = build_print_job_request(
            self.printer_uri(destination),
            user_name=user_name,
            job_name=job_name,
            document=document,
            request_id=request_id,
        )

        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(
                    f"{self.server_url}/printers/{destination}",
                    content=body,
                    headers={"Content-Type": "application/ipp"},
                )
        except httpx.HTTPError as e:
            logger.error(f"Print submission to {destination} failed: {e}")
            raise PrintSubmissionError(f"Print submission failed: {e}") from e

        if response.status_code >= 400:
            raise PrintSubmissionError(
                f"Print server returned HTTP {response.status_code}: {response.text[:200]}"
            )

        parsed = parse_response(response.content)
        if parsed.status_code > STATUS_SUCCESS_MAX:
            message = parsed.first("status-message") or f"IPP status 0x{parsed.status_code:04x}"
            raise PrintSubmissionError(f"Print server rejected the job: {message}")

        logger.info(f"Submitted print request {request_id} to {destination}")
        return PrintResult(
            destination=destination,
            request_id=request_id,
            status_code=parsed.status_code,
            print_job_id=parsed.first("job-id"),
        )
