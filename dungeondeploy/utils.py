import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import yaml
from eth_utils import is_address, to_checksum_address

from dungeondeploy.constants import STANDARD_REGISTRY_JSON_FORMAT


def _load_yaml(filepath: Path) -> dict:
    """Loads a YAML file."""
    with open(filepath, "r") as file:
        return yaml.safe_load(file)


def _load_json(filepath: Path) -> dict:
    """Loads a JSON file."""
    with open(filepath, "r") as file:
        return json.load(file)


def dump_json(data: Any) -> str:
    """Serializes data the same way every time so rewrites never produce spurious diffs."""
    return json.dumps(data, **STANDARD_REGISTRY_JSON_FORMAT) + "\n"


def write_text_atomic(filepath: Path, content: str) -> None:
    """Writes through a temporary file in the same directory, then replaces the target."""
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(dir=filepath.parent, prefix=f".{filepath.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as file:
            file.write(content)
            file.flush()
            os.fsync(file.fileno())
        os.replace(temp_path, filepath)
    except BaseException:
        if os.path.exists(temp_path):
            os.unlink(temp_path)
        raise


def utc_now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def addresses_equal(a: Any, b: Any) -> bool:
    """Case-insensitive address equality; non-addresses never match."""
    if not (isinstance(a, str) and isinstance(b, str)):
        return False
    if not (is_address(a) and is_address(b)):
        return False
    return a.lower() == b.lower()


def normalize_value(value: Any) -> Any:
    """Checksums address strings and hexlifies bytes so values compare and print uniformly."""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, str) and is_address(value) and value.startswith("0x") and len(value) == 42:
        return to_checksum_address(value)
    if isinstance(value, (list, tuple)):
        return [normalize_value(v) for v in value]
    return value


def values_equal(a: Any, b: Any) -> bool:
    if addresses_equal(a, b):
        return True
    return normalize_value(a) == normalize_value(b)
