"""AT Protocol identity resolution.

Turns whatever a user typed into the login form (a handle, an `@handle`, an
`at://` URI or a DID) into a DID, then reads the DID document to find the
subject's canonical handle and the PDS that hosts its repository.

Handles resolve through a `_atproto` DNS TXT record or the HTTPS
`/.well-known/atproto-did` endpoint. did:plc documents come from the PLC
directory; did:web documents from the domain's `/.well-known/did.json`.
"""

import asyncio
from enum import IntEnum
import logging
from aiohttp import ClientSession
from pydantic import BaseModel
from aiodns import DNSResolver
from typing import Optional, Any, Dict
import sentry_sdk

logger = logging.getLogger(__name__)


class SubjectType(IntEnum):
    did_method_plc = 1
    did_method_web = 2
    hostname = 3


class ParsedSubject(BaseModel):
    subject_type: SubjectType
    subject: str


class ResolvedSubject(BaseModel):
    """A subject with its DID, canonical handle and PDS endpoint."""

    did: str
    handle: str
    pds: str


async def resolve_handle_dns(handle: str) -> Optional[str]:
    """Look up the `did=` value of the `_atproto.{handle}` TXT record."""
    resolver = DNSResolver()
    try:
        results = await resolver.query(f"_atproto.{handle}", "TXT")
    except Exception as e:
        # NXDOMAIN and timeouts are routine; the HTTPS method may still answer.
        logger.debug("DNS resolution failed for %s: %s", handle, e)
        sentry_sdk.capture_exception(e)
        return None
    for result in results or []:
        text = result.text
        if isinstance(text, bytes):
            text = text.decode("utf-8")
        if text.startswith("did="):
            return text.removeprefix("did=").strip()
    return None


async def resolve_handle_http(session: ClientSession, handle: str) -> Optional[str]:
    """Fetch the DID served at `https://{handle}/.well-known/atproto-did`."""
    try:
        async with session.get(f"https://{handle}/.well-known/atproto-did") as resp:
            if resp.status != 200:
                return None
            body = await resp.text()
    except Exception as e:
        logger.debug("HTTPS resolution failed for %s: %s", handle, e)
        sentry_sdk.capture_exception(e)
        return None
    if body is None:
        return None
    body = body.strip()
    if not body.startswith("did:"):
        return None
    return body


async def resolve_handle(session: ClientSession, handle: str) -> Optional[str]:
    """Resolve a handle using DNS and HTTPS concurrently, preferring DNS."""
    async with asyncio.TaskGroup() as tg:
        dns_result = tg.create_task(resolve_handle_dns(handle))
        http_result = tg.create_task(resolve_handle_http(session, handle))
    if dns_result.result() is not None:
        return dns_result.result()
    return http_result.result()


def parse_input(subject: str) -> ParsedSubject:
    subject = subject.strip()
    subject = subject.removeprefix("at://")
    subject = subject.removeprefix("@")

    if subject.startswith("did:plc:"):
        return ParsedSubject(subject_type=SubjectType.did_method_plc, subject=subject)
    elif subject.startswith("did:web:"):
        return ParsedSubject(subject_type=SubjectType.did_method_web, subject=subject)

    return ParsedSubject(
        subject_type=SubjectType.hostname, subject=subject.lower()
    )


def did_document_url(plc_hostname: str, did: str) -> Optional[str]:
    if did.startswith("did:plc:"):
        return f"https://{plc_hostname}/{did}"
    elif did.startswith("did:web:"):
        parts = did.removeprefix("did:web:").split(":")
        if len(parts) == 1:
            parts.append(".well-known")
        return "https://{inner}/did.json".format(inner="/".join(parts))
    return None


def document_handle(document: Dict[str, Any]) -> Optional[str]:
    """First `at://` entry of `alsoKnownAs`, without the scheme."""
    for value in document.get("alsoKnownAs", []):
        if isinstance(value, str) and value.startswith("at://"):
            return value.removeprefix("at://")
    return None


def document_pds(document: Dict[str, Any]) -> Optional[str]:
    """Endpoint of the `#atproto_pds` service entry."""
    for service in document.get("service", []):
        if not isinstance(service, dict):
            continue
        if (
            service.get("id", "").endswith("#atproto_pds")
            and service.get("type", None) == "AtprotoPersonalDataServer"
            and "serviceEndpoint" in service
        ):
            return str(service["serviceEndpoint"]).rstrip("/")
    return None


async def resolve_did(
    session: ClientSession, plc_hostname: str, did: str
) -> Optional[ResolvedSubject]:
    """Read a DID document and extract the handle and PDS endpoint."""
    url = did_document_url(plc_hostname, did)
    if url is None:
        return None

    async with session.get(url) as resp:
        if resp.status != 200:
            return None
        document = await resp.json()

    if not isinstance(document, dict):
        return None

    handle = document_handle(document)
    pds = document_pds(document)
    if handle is None or pds is None:
        return None
    return ResolvedSubject(did=did, handle=handle, pds=pds)


async def resolve_subject(
    session: ClientSession, plc_hostname: str, subject: str
) -> Optional[ResolvedSubject]:
    """Resolve a handle or DID to its DID, canonical handle and PDS.

    Returns None when any step fails; callers decide how to report it.
    """
    parsed_subject = parse_input(subject)

    did: Optional[str] = None
    if parsed_subject.subject_type == SubjectType.hostname:
        did = await resolve_handle(session, parsed_subject.subject)
    else:
        did = parsed_subject.subject

    if did is None:
        return None

    return await resolve_did(session, plc_hostname, did)
