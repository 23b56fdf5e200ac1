"""Minimal self-contained PEP 517 backend for offline installs.

Nothing is fetched at build time, so `pip install -e .` works in
restricted environments. Package data (*.plist) ships alongside the sources.
"""

from __future__ import annotations

import base64
import hashlib
import re
import tomllib
from pathlib import Path
from zipfile import ZIP_DEFLATED, ZipFile

DEFAULT_PROJECT = {
    "name": "nac-emulator",
    "version": "0.1.0",
    "description": "Validation data generator that emulates IMDAppleServices under Unicorn",
    "license": "MIT",
    "requires_python": ">=3.11",
    "dependencies": ["unicorn>=2.0.1", "requests>=2.28"],
    "optional_dependencies": {"test": ["pytest>=7.4.0", "hypothesis>=6.82.0"]},
    "scripts": {"nac-emulator": "nac_emulator.cli:main"},
}

PROJECT_ROOT = Path(__file__).resolve().parent
TOP_LEVEL = "nac_emulator"
PACKAGE_DIR = PROJECT_ROOT / TOP_LEVEL
PACKAGE_PATTERNS = ("*.py", "*.plist")
LICENSE_SOURCE = PROJECT_ROOT / "LICENSE"


def _normalize_dist_name(name: str) -> str:
    # PEP 427-compatible wheel name normalization.
    return re.sub(r"[-_.]+", "_", name).lower()


def _clean_list(value: object) -> list[str] | None:
    if not isinstance(value, list):
        return None
    return [str(x) for x in value if str(x).strip()]


def _load_project_from_pyproject() -> dict:
    merged = dict(DEFAULT_PROJECT)
    pyproject = PROJECT_ROOT / "pyproject.toml"
    if not pyproject.is_file():
        return merged

    with pyproject.open("rb") as fh:
        data = tomllib.load(fh)

    project = data.get("project", {})
    if not isinstance(project, dict):
        return merged

    for key, target in (("name", "name"), ("version", "version"), ("description", "description")):
        value = project.get(key)
        if isinstance(value, str) and value.strip():
            merged[target] = value.strip()

    license_info = project.get("license")
    if isinstance(license_info, str) and license_info.strip():
        merged["license"] = license_info.strip()
    elif isinstance(license_info, dict):
        text = license_info.get("text") or license_info.get("file")
        if isinstance(text, str) and text.strip():
            merged["license"] = text.strip()

    requires_python = project.get("requires-python")
    if isinstance(requires_python, str) and requires_python.strip():
        merged["requires_python"] = requires_python.strip()

    dependencies = _clean_list(project.get("dependencies"))
    if dependencies is not None:
        merged["dependencies"] = dependencies

    extras = project.get("optional-dependencies")
    if isinstance(extras, dict):
        merged["optional_dependencies"] = {
            str(name): _clean_list(reqs) or [] for name, reqs in extras.items()
        }

    scripts = project.get("scripts")
    if isinstance(scripts, dict) and scripts:
        merged["scripts"] = {
            str(k): str(v) for k, v in scripts.items() if str(k).strip() and str(v).strip()
        }

    return merged


PROJECT = _load_project_from_pyproject()
DIST_NAME = PROJECT["name"]
DIST_NAME_NORMALIZED = _normalize_dist_name(DIST_NAME)
VERSION = PROJECT["version"]


def _dist_info_dir() -> str:
    return f"{DIST_NAME_NORMALIZED}-{VERSION}.dist-info"


def _wheel_filename() -> str:
    return f"{DIST_NAME_NORMALIZED}-{VERSION}-py3-none-any.whl"


def _metadata_text() -> str:
    lines = [
        "Metadata-Version: 2.1\n"
        f"Name: {DIST_NAME}\n"
        f"Version: {VERSION}\n"
        f"Summary: {PROJECT['description']}\n"
        f"License: {PROJECT['license']}\n"
        f"Requires-Python: {PROJECT['requires_python']}\n"
    ]
    for dep in PROJECT["dependencies"]:
        lines.append(f"Requires-Dist: {dep}\n")
    for extra, reqs in PROJECT["optional_dependencies"].items():
        lines.append(f"Provides-Extra: {extra}\n")
        for dep in reqs:
            lines.append(f'Requires-Dist: {dep}; extra == "{extra}"\n')
    return "".join(lines)


def _wheel_text() -> str:
    return (
        "Wheel-Version: 1.0\n"
        "Generator: custom-offline-backend\n"
        "Root-Is-Purelib: true\n"
        "Tag: py3-none-any\n"
    )


def _entry_points_text() -> str:
    lines = ["[console_scripts]\n"]
    for name, target in PROJECT["scripts"].items():
        lines.append(f"{name} = {target}\n")
    return "".join(lines)


def _hash_and_size(content: bytes) -> tuple[str, int]:
    digest = hashlib.sha256(content).digest()
    b64 = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return f"sha256={b64}", len(content)


def _iter_package_files() -> list[Path]:
    files: set[Path] = set()
    for pattern in PACKAGE_PATTERNS:
        files.update(
            p for p in PACKAGE_DIR.rglob(pattern) if p.is_file() and "__pycache__" not in p.parts
        )
    return sorted(files)


def _dist_info_files() -> list[tuple[str, bytes]]:
    files = [
        ("METADATA", _metadata_text().encode("utf-8")),
        ("WHEEL", _wheel_text().encode("utf-8")),
        ("entry_points.txt", _entry_points_text().encode("utf-8")),
        ("top_level.txt", f"{TOP_LEVEL}\n".encode("utf-8")),
    ]
    if LICENSE_SOURCE.is_file():
        files.append(("LICENSE", LICENSE_SOURCE.read_bytes()))
    return files


def _write_wheel(wheel_directory: str, payload: list[tuple[str, bytes]]) -> str:
    wheel_dir = Path(wheel_directory)
    wheel_dir.mkdir(parents=True, exist_ok=True)
    wheel_name = _wheel_filename()
    dist_info = _dist_info_dir()

    records = list(payload)
    records.extend((f"{dist_info}/{name}", data) for name, data in _dist_info_files())

    with ZipFile(wheel_dir / wheel_name, "w", compression=ZIP_DEFLATED) as zf:
        for arcname, data in records:
            zf.writestr(arcname, data)

        record_path = f"{dist_info}/RECORD"
        lines = []
        for path, data in records:
            digest, size = _hash_and_size(data)
            lines.append(f"{path},{digest},{size}")
        lines.append(f"{record_path},,")
        zf.writestr(record_path, ("\n".join(lines) + "\n").encode("utf-8"))

    return wheel_name


def _write_metadata(metadata_directory: str) -> str:
    dist_info = _dist_info_dir()
    out_dir = Path(metadata_directory) / dist_info
    out_dir.mkdir(parents=True, exist_ok=True)
    for name, data in _dist_info_files():
        (out_dir / name).write_bytes(data)
    return dist_info


def get_requires_for_build_wheel(config_settings=None):
    return []


def get_requires_for_build_editable(config_settings=None):
    return []


def prepare_metadata_for_build_wheel(metadata_directory, config_settings=None):
    return _write_metadata(metadata_directory)


def prepare_metadata_for_build_editable(metadata_directory, config_settings=None):
    return _write_metadata(metadata_directory)


def build_wheel(wheel_directory, config_settings=None, metadata_directory=None):
    payload = [
        (src.relative_to(PROJECT_ROOT).as_posix(), src.read_bytes())
        for src in _iter_package_files()
    ]
    return _write_wheel(wheel_directory, payload)


def build_editable(wheel_directory, config_settings=None, metadata_directory=None):
    pth = (f"{DIST_NAME_NORMALIZED}.pth", f"{PROJECT_ROOT}\n".encode("utf-8"))
    return _write_wheel(wheel_directory, [pth])
