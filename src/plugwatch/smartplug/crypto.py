"""Tuya LAN broadcast decryption.

Discovery frames look like::

    000055aa | seq | cmd | length | retcode | payload ... | crc | 0000aa55
    <-------------- 20-byte header ------------>            <- 8 bytes ->

Protocol 3.1 devices broadcast the payload as plaintext JSON on port 6666.
Protocol 3.3+ devices broadcast it AES-128-ECB encrypted (no padding) on port
6667, keyed with the MD5 digest of a fixed, well-known string.
"""

import hashlib
import json
import logging
import re

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from ..core.exceptions import DecryptionError

logger = logging.getLogger(__name__)

HEADER_SIZE = 20
TRAILER_SIZE = 8
UDP_KEY = hashlib.md5(b"yGAdlopoPVldABfn").digest()

_NON_PRINTABLE = re.compile(rb"[^\x20-\x7e]")


def strip_frame(datagram: bytes) -> bytes:
    """Remove the fixed header and trailing CRC/suffix from a broadcast frame."""
    if len(datagram) <= HEADER_SIZE + TRAILER_SIZE:
        raise DecryptionError("Datagram too short", f"{len(datagram)} bytes")
    return datagram[HEADER_SIZE:-TRAILER_SIZE]


def decrypt_payload(payload: bytes, key: bytes = UDP_KEY) -> bytes:
    """AES-128-ECB decrypt without padding removal."""
    if len(payload) % 16:
        raise DecryptionError("Payload is not a multiple of the AES block size", f"{len(payload)} bytes")
    decryptor = Cipher(algorithms.AES(key), modes.ECB()).decryptor()
    return decryptor.update(payload) + decryptor.finalize()


def clean_printable(data: bytes) -> str:
    """Drop every byte outside printable ASCII (0x20-0x7E).

    Broadcast frames are not reliably padded, so trailing garbage is expected.
    """
    return _NON_PRINTABLE.sub(b"", data).decode("ascii")


def decode_broadcast(datagram: bytes) -> dict:
    """Decode a raw discovery datagram into the device descriptor.

    Args:
        datagram: Full UDP payload including header and trailer.

    Returns:
        Parsed JSON object with at least ``gwId`` and ``version``.

    Raises:
        DecryptionError: If the payload cannot be decrypted or parsed.
    """
    payload = strip_frame(datagram)

    if payload.lstrip().startswith(b"{"):
        text = clean_printable(payload)
    else:
        try:
            text = clean_printable(decrypt_payload(payload))
        except ValueError as e:
            raise DecryptionError("AES decryption failed", str(e)) from e

    # Cleaned plaintext may still carry stray printable bytes around the object
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        text = text[start : end + 1]

    try:
        descriptor = json.loads(text)
    except json.JSONDecodeError as e:
        raise DecryptionError("Broadcast payload is not valid JSON", str(e)) from e

    if not isinstance(descriptor, dict) or "gwId" not in descriptor:
        raise DecryptionError("Broadcast payload has no gwId", text[:80])

    logger.debug("Decoded broadcast from %s (version %s)", descriptor["gwId"], descriptor.get("version"))
    return descriptor
