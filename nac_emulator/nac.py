"""Validation data driver: runs the vendor NAC routines inside a fresh harness."""

from __future__ import annotations

import base64
import dataclasses
import hashlib
import logging
import os
from pathlib import Path

from nac_emulator.errors import EmulationFault, FormatError, NacCallError
from nac_emulator.fixtures import FixtureData, load_fixtures
from nac_emulator.hooks import Harness, HookTable, default_hooks
from nac_emulator.machine import Machine
from nac_emulator.macho import get_slice, parse_image
from nac_emulator.objects import ObjectTable
from nac_emulator.session import AppleValidationSession, ValidationSession, download_binary

logger = logging.getLogger(__name__)

BINARY_HASH = "e1181ccad82e6629d52c6a006645ad87ee59bd13"
BINARY_URL = "https://github.com/JJTech0130/nacserver/raw/main/IMDAppleServices"
BINARY_PATH = Path(__file__).resolve().parent / "data" / "IMDAppleServices"
BINARY_ENV = "NAC_EMULATOR_BINARY"


@dataclasses.dataclass(frozen=True)
class EntryPoints:
    init: int = 0xB1DB0
    key_establishment: int = 0xB1DD0
    sign: int = 0xB1DF0


DEFAULT_ENTRY_POINTS = EntryPoints()


def default_binary_path() -> Path:
    override = os.environ.get(BINARY_ENV)
    return Path(override) if override else BINARY_PATH


def load_binary(path: str | Path | None = None, *, download: bool = True, verify: bool = True) -> bytes:
    """Read the vendor binary, fetching and caching it when it is not on disk."""
    source = Path(path) if path is not None else default_binary_path()
    if source.exists():
        logger.debug("using %s", source)
        binary = source.read_bytes()
        if verify:
            _check_hash(binary)
    elif download:
        binary = download_binary(BINARY_URL)
        if verify:
            _check_hash(binary)
        try:
            source.parent.mkdir(parents=True, exist_ok=True)
            source.write_bytes(binary)
        except OSError as exc:
            logger.warning("cannot cache binary at %s: %s", source, exc)
        else:
            logger.info("cached binary at %s", source)
    else:
        raise FormatError(f"binary not found: {source}")
    return binary


def _check_hash(binary: bytes) -> None:
    digest = hashlib.sha1(binary).hexdigest()
    if digest != BINARY_HASH:
        raise FormatError(f"binary SHA-1 {digest} does not match {BINARY_HASH}")


def load_nac(
    binary: bytes,
    fixtures: FixtureData | None = None,
    *,
    hooks: HookTable | None = None,
    trace: bool = False,
) -> Harness:
    image = parse_image(get_slice(binary))
    machine = Machine(trace=trace)
    machine.load(image)
    harness = Harness(
        machine=machine,
        objects=ObjectTable(),
        fixtures=fixtures if fixtures is not None else load_fixtures(),
    )
    machine.install_hooks(hooks if hooks is not None else default_hooks(), harness, image.binds)
    return harness


def _check(routine: str, ret: int) -> None:
    code = ret & 0xFFFFFFFF
    if code:
        raise NacCallError(routine, (code ^ 0x80000000) - 0x80000000)


def nac_init(
    h: Harness,
    cert: bytes,
    *,
    entry_points: EntryPoints = DEFAULT_ENTRY_POINTS,
    timeout_ms: int = 0,
    max_insn: int = 0,
) -> tuple[int, bytes]:
    m = h.machine
    cert_addr = m.allocate(len(cert))
    m.write_memory(cert_addr, cert)
    out_ctx = m.allocate(8)
    out_request = m.allocate(8)
    out_request_len = m.allocate(8)

    ret = m.call(
        entry_points.init,
        [cert_addr, len(cert), out_ctx, out_request, out_request_len],
        timeout_ms=timeout_ms,
        max_insn=max_insn,
    )
    _check("nac_init", ret)

    ctx = m.read_u64(out_ctx)
    request_addr = m.read_u64(out_request)
    request_len = m.read_u64(out_request_len) & 0xFFFFFFFF
    logger.debug("request @ 0x%x : 0x%x", request_addr, request_len)
    return ctx, m.read_memory(request_addr, request_len)


def nac_key_establishment(
    h: Harness,
    ctx: int,
    session_info: bytes,
    *,
    entry_points: EntryPoints = DEFAULT_ENTRY_POINTS,
    timeout_ms: int = 0,
    max_insn: int = 0,
) -> None:
    m = h.machine
    info_addr = m.allocate(len(session_info))
    m.write_memory(info_addr, session_info)
    ret = m.call(
        entry_points.key_establishment,
        [ctx, info_addr, len(session_info)],
        timeout_ms=timeout_ms,
        max_insn=max_insn,
    )
    _check("nac_key_establishment", ret)


def nac_sign(
    h: Harness,
    ctx: int,
    *,
    entry_points: EntryPoints = DEFAULT_ENTRY_POINTS,
    timeout_ms: int = 0,
    max_insn: int = 0,
) -> bytes:
    m = h.machine
    out_data = m.allocate(8)
    out_data_len = m.allocate(8)
    ret = m.call(
        entry_points.sign,
        [ctx, 0, 0, out_data, out_data_len],
        timeout_ms=timeout_ms,
        max_insn=max_insn,
    )
    _check("nac_sign", ret)

    data_addr = m.read_u64(out_data)
    data_len = m.read_u64(out_data_len) & 0xFFFFFFFF
    logger.debug("validation data @ 0x%x : 0x%x", data_addr, data_len)
    return m.read_memory(data_addr, data_len)


def generate_validation_bytes(
    *,
    session: ValidationSession | None = None,
    binary: bytes | None = None,
    fixtures: FixtureData | None = None,
    entry_points: EntryPoints = DEFAULT_ENTRY_POINTS,
    timeout_ms: int = 0,
    max_insn: int = 0,
    trace: bool = False,
    download: bool = True,
) -> bytes:
    """Run init, key establishment and sign on a freshly built harness."""
    if session is None:
        session = AppleValidationSession()
    if binary is None:
        binary = load_binary(download=download)

    h = load_nac(binary, fixtures, trace=trace)
    bounds = {"entry_points": entry_points, "timeout_ms": timeout_ms, "max_insn": max_insn}

    ctx, request = nac_init(h, session.certificate(), **bounds)
    logger.info("nac_init ok: ctx=0x%x request=%d bytes", ctx, len(request))
    nac_key_establishment(h, ctx, session.session_info(request), **bounds)
    logger.info("key establishment ok")
    blob = nac_sign(h, ctx, **bounds)
    if not blob:
        raise EmulationFault("nac_sign produced no validation data")
    logger.info("validation data: %d bytes", len(blob))
    return blob


def generate_validation_data(**kwargs) -> str:
    return base64.b64encode(generate_validation_bytes(**kwargs)).decode("ascii")
