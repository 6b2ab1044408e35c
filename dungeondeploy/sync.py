import json
import re
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

import requests
import yaml
from dotenv import dotenv_values, set_key

from dungeondeploy.constants import SYNCED_SNAPSHOT_SUFFIX
from dungeondeploy.errors import NotFound, PlanError, SyncError
from dungeondeploy.log import Logger
from dungeondeploy.registry import ContractRecord, Registry, read_registries
from dungeondeploy.utils import _load_yaml, dump_json, write_text_atomic

ADDRESS_MAP = "address-map"
ABI_FILES = "abi-files"
MANIFEST_PATCH = "manifest-patch"
ENV_FILE = "env-file"
HTTP = "http"

TARGET_KINDS = (ADDRESS_MAP, ABI_FILES, MANIFEST_PATCH, ENV_FILE, HTTP)
FILE_KINDS = (ADDRESS_MAP, ABI_FILES, MANIFEST_PATCH, ENV_FILE)

ADDRESS_MAP_FORMATS = ("json", "env", "js")

HTTP_TIMEOUT = 30  # seconds

WRITTEN = "written"
UNCHANGED = "unchanged"
SKIPPED = "skipped"
FAILED = "failed"


class SyncTarget(NamedTuple):
    """A downstream consumer of the registry: a file to render or an endpoint to notify."""

    name: str
    kind: str
    path: Optional[Path] = None
    url: Optional[str] = None
    options: Optional[Dict[str, Any]] = None

    def option(self, key: str, default: Any = None) -> Any:
        return (self.options or dict()).get(key, default)


class SyncResult(NamedTuple):
    target: str
    status: str
    files: Tuple[Path, ...] = ()
    message: str = ""


class SyncReport:
    def __init__(self):
        self.results: List[SyncResult] = list()

    def add(self, result: SyncResult) -> None:
        self.results.append(result)

    @property
    def ok(self) -> bool:
        return all(result.status != FAILED for result in self.results)

    @property
    def failed(self) -> List[SyncResult]:
        return [result for result in self.results if result.status == FAILED]

    @property
    def written(self) -> List[Path]:
        return [path for result in self.results for path in result.files]


#
# Target file
#


def _parse_target(entry: Any, base_dir: Path) -> SyncTarget:
    if not isinstance(entry, dict) or "name" not in entry or "kind" not in entry:
        raise PlanError(f"Malformed sync target (needs name and kind): {entry!r}")
    name, kind = entry["name"], entry["kind"]
    if kind not in TARGET_KINDS:
        raise PlanError(f"Sync target {name} has unknown kind '{kind}'; expected one of {', '.join(TARGET_KINDS)}")

    path = None
    if kind in FILE_KINDS:
        if "path" not in entry:
            raise PlanError(f"Sync target {name} ({kind}) needs a 'path'")
        path = Path(entry["path"])
        if not path.is_absolute():
            path = base_dir / path
    url = entry.get("url")
    if kind == HTTP and not url:
        raise PlanError(f"Sync target {name} (http) needs a 'url'")
    if kind == MANIFEST_PATCH:
        if not isinstance(entry.get("fields"), dict):
            raise PlanError(f"Sync target {name} (manifest-patch) needs a 'fields' mapping")
        for field_path in entry["fields"]:
            parse_path(field_path)
    if kind == ADDRESS_MAP and entry.get("format", "json") not in ADDRESS_MAP_FORMATS:
        raise PlanError(f"Sync target {name} has unknown address-map format '{entry['format']}'")
    if kind == ENV_FILE and not (entry.get("keys") or entry.get("key")):
        raise PlanError(f"Sync target {name} (env-file) needs 'keys' or a 'key' template")

    options = {k: v for k, v in entry.items() if k not in ("name", "kind", "path", "url")}
    return SyncTarget(name=name, kind=kind, path=path, url=url, options=options)


def load_targets(filepath: Path) -> List[SyncTarget]:
    """Loads sync targets from YAML; relative paths are taken from the file's directory."""
    filepath = Path(filepath)
    if not filepath.exists():
        raise NotFound(f"Sync targets file {filepath} does not exist.")
    config = _load_yaml(filepath) or dict()
    entries = config.get("targets")
    if not entries:
        raise PlanError(f"Sync targets file {filepath} declares no 'targets'")
    targets = [_parse_target(entry, filepath.parent) for entry in entries]
    names = [target.name for target in targets]
    duplicates = {name for name in names if names.count(name) > 1}
    if duplicates:
        raise PlanError(f"Sync targets declared more than once: {', '.join(sorted(duplicates))}")
    return targets


#
# Values
#


def upper_snake(name: str) -> str:
    """DungeonCore -> DUNGEON_CORE, VRFManager -> VRF_MANAGER"""
    return re.sub(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])", "_", name).upper()


def _format_key(template: str, name: str) -> str:
    return template.format(name=name, NAME=upper_snake(name))


def _selected_records(registry: Registry, target: SyncTarget) -> List[ContractRecord]:
    names = target.option("contracts")
    if not names:
        return registry.records
    return [registry.get(name) for name in names]


def resolve_value(expression: Any, registry: Registry) -> Any:
    """
    Evaluates a field expression against the registry.

    `$Hero` is Hero's address, `$Hero.block_number` its deployment block;
    `$network` and `$chain_id` describe the registry itself. Anything else
    is a literal.
    """
    if not (isinstance(expression, str) and expression.startswith("$")):
        return expression
    reference = expression[1:]
    if reference == "network":
        return registry.network
    if reference == "chain_id":
        return registry.chain_id
    name, _, attribute = reference.partition(".")
    record = registry.get(name)
    attribute = attribute or "address"
    if attribute not in ("address", "block_number", "tx_hash"):
        raise SyncError(f"Unknown contract attribute in {expression}")
    value = getattr(record, attribute)
    if value is None:
        raise SyncError(f"{name} has no recorded {attribute} (needed by {expression})")
    return value


#
# Transforms (pure functions of the registry)
#


def render_address_map(registry: Registry, target: SyncTarget) -> str:
    records = _selected_records(registry, target)
    template = target.option("key", "{name}")
    entries = [(_format_key(template, record.name), record.address) for record in records]

    start_block_key = target.option("start_block")
    if start_block_key:
        blocks = [record.block_number for record in records if record.block_number is not None]
        if blocks:
            entries.append((start_block_key, min(blocks)))

    output_format = target.option("format", "json")
    if output_format == "env":
        return "".join(f"{key}={value}\n" for key, value in entries)
    if output_format == "js":
        return "".join(f"export const {key} = {json.dumps(value)};\n" for key, value in entries)
    return dump_json(dict(entries))


def render_abi_files(registry: Registry, target: SyncTarget) -> Dict[Path, str]:
    wrap = target.option("wrap", False)
    rendered = dict()
    for record in _selected_records(registry, target):
        payload = {"abi": record.abi} if wrap else record.abi
        rendered[target.path / f"{record.name}.json"] = dump_json(payload)
    return rendered


_PATH_TOKEN = re.compile(
    r"\[(?P<index>\d+)\]|\[(?P<field>[^\]=]+)=(?P<value>[^\]]*)\]|(?:^|\.)(?P<key>[^.\[\]]+)"
)
_PLAIN_SAFE = re.compile(r"[A-Za-z0-9_][A-Za-z0-9_./:@+-]*")


def parse_path(path: str) -> List[Tuple]:
    """dataSources[name=Hero].source.address -> [key, select, key, key] tokens"""
    tokens, position = list(), 0
    for match in _PATH_TOKEN.finditer(path):
        if match.start() != position:
            break
        position = match.end()
        if match.group("index") is not None:
            tokens.append(("index", int(match.group("index"))))
        elif match.group("field") is not None:
            tokens.append(("select", match.group("field"), match.group("value")))
        else:
            tokens.append(("key", match.group("key")))
    if position != len(path) or not tokens:
        raise PlanError(f"Malformed field path '{path}'")
    return tokens


def _find_node(root: yaml.Node, path: str) -> Optional[yaml.ScalarNode]:
    node = root
    for token in parse_path(path):
        if token[0] == "key":
            if not isinstance(node, yaml.MappingNode):
                return None
            node = next((v for k, v in node.value if k.value == token[1]), None)
        elif token[0] == "index":
            if not isinstance(node, yaml.SequenceNode) or token[1] >= len(node.value):
                return None
            node = node.value[token[1]]
        else:
            _, field, value = token
            if not isinstance(node, yaml.SequenceNode):
                return None
            node = next(
                (
                    item
                    for item in node.value
                    if isinstance(item, yaml.MappingNode)
                    and any(k.value == field and getattr(v, "value", None) == value for k, v in item.value)
                ),
                None,
            )
        if node is None:
            return None
    return node if isinstance(node, yaml.ScalarNode) else None


def _render_scalar(value: Any, style: Optional[str], json_document: bool) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    text = str(value)
    if style == '"' or (style is None and json_document):
        return json.dumps(text)
    if style == "'":
        return "'" + text.replace("'", "''") + "'"
    if style is None and _PLAIN_SAFE.fullmatch(text):
        return text
    return json.dumps(text)


def patch_manifest(text: str, fields: Dict[str, Any], json_document: bool = False) -> Tuple[str, List[str]]:
    """
    Replaces the scalar values at `fields` paths in a YAML or JSON document.

    Only the characters of each addressed scalar change; comments, layout
    and quoting of everything else are kept. Returns the new text and the
    paths that do not exist in the document.
    """
    try:
        root = yaml.compose(text)
    except yaml.YAMLError as e:
        raise SyncError(f"Cannot parse manifest: {e}") from e
    if root is None:
        return text, sorted(fields)

    replacements, missing = list(), list()
    for path, value in fields.items():
        node = _find_node(root, path)
        if node is None:
            missing.append(path)
            continue
        if node.style in ("|", ">"):
            raise SyncError(f"Cannot patch block scalar at '{path}'")
        if node.value == str(value) or (isinstance(value, bool) and node.value == str(value).lower()):
            continue
        replacement = _render_scalar(value, node.style, json_document)
        replacements.append((node.start_mark.index, node.end_mark.index, replacement))

    for start, end, replacement in sorted(replacements, reverse=True):
        text = text[:start] + replacement + text[end:]
    return text, missing


def address_payload(registry: Registry) -> Dict[str, Any]:
    return {
        "network": registry.network,
        "chainId": registry.chain_id,
        "contracts": registry.addresses(),
    }


#
# Propagation
#


def synced_snapshot_path(registry: Registry) -> Path:
    return registry.filepath.with_suffix(SYNCED_SNAPSHOT_SUFFIX)


def load_synced_snapshot(registry: Registry) -> Optional[Registry]:
    path = synced_snapshot_path(registry)
    if not path.exists():
        return None
    return read_registries(path).get(registry.chain_id)


class Propagator:
    """
    Pushes registry addresses and ABIs to downstream consumers.

    Every file is rendered from the registry alone and written only when
    its content differs, so repeating a sync leaves files byte-identical.
    """

    def __init__(self, logger: Optional[Logger] = None, session: Optional[requests.Session] = None):
        self.logger = logger or Logger(name="sync")
        self.session = session or requests.Session()

    def _write_if_changed(self, path: Path, content: str) -> bool:
        if path.exists() and path.read_text() == content:
            self.logger.debug(f"{path} unchanged")
            return False
        write_text_atomic(path, content)
        self.logger.info(f"Wrote {path}")
        return True

    def _write_all(self, target: SyncTarget, rendered: Dict[Path, str]) -> SyncResult:
        written = [path for path, content in rendered.items() if self._write_if_changed(path, content)]
        return SyncResult(target.name, WRITTEN if written else UNCHANGED, written)

    def _sync_address_map(self, registry: Registry, target: SyncTarget, previous) -> SyncResult:
        return self._write_all(target, {target.path: render_address_map(registry, target)})

    def _sync_abi_files(self, registry: Registry, target: SyncTarget, previous) -> SyncResult:
        return self._write_all(target, render_abi_files(registry, target))

    def _sync_manifest(self, registry: Registry, target: SyncTarget, previous) -> SyncResult:
        if not target.path.exists():
            return SyncResult(target.name, FAILED, message=f"{target.path} does not exist")
        fields = {path: resolve_value(value, registry) for path, value in target.option("fields").items()}
        text = target.path.read_text()
        patched, missing = patch_manifest(text, fields, json_document=target.path.suffix == ".json")
        if missing:
            return SyncResult(
                target.name, FAILED, message=f"paths not found in {target.path}: {', '.join(missing)}"
            )
        return self._write_all(target, {target.path: patched})

    def _sync_env_file(self, registry: Registry, target: SyncTarget, previous) -> SyncResult:
        if not target.path.exists():
            return SyncResult(target.name, FAILED, message=f"{target.path} does not exist")
        keys = dict(target.option("keys") or dict())
        template = target.option("key")
        if template:
            for record in _selected_records(registry, target):
                keys.setdefault(_format_key(template, record.name), f"${record.name}")

        current = dotenv_values(target.path)
        changed = False
        for key, expression in keys.items():
            value = str(resolve_value(expression, registry))
            if current.get(key) == value:
                continue
            set_key(str(target.path), key, value, quote_mode=target.option("quote_mode", "never"))
            changed = True
        if changed:
            self.logger.info(f"Updated {target.path}")
            return SyncResult(target.name, WRITTEN, [target.path])
        return SyncResult(target.name, UNCHANGED)

    def _sync_http(self, registry: Registry, target: SyncTarget, previous: Optional[Registry]) -> SyncResult:
        if previous is not None and not registry.diff(previous):
            return SyncResult(target.name, SKIPPED, message="no registry changes since last sync")
        try:
            response = self.session.post(
                target.url,
                json=address_payload(registry),
                headers=target.option("headers") or dict(),
                timeout=target.option("timeout", HTTP_TIMEOUT),
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            return SyncResult(target.name, FAILED, message=f"POST {target.url} failed: {e}")
        self.logger.info(f"Posted addresses to {target.url}", status=response.status_code)
        return SyncResult(target.name, WRITTEN)

    def sync_target(self, registry: Registry, target: SyncTarget, previous: Optional[Registry] = None) -> SyncResult:
        handlers = {
            ADDRESS_MAP: self._sync_address_map,
            ABI_FILES: self._sync_abi_files,
            MANIFEST_PATCH: self._sync_manifest,
            ENV_FILE: self._sync_env_file,
            HTTP: self._sync_http,
        }
        try:
            return handlers[target.kind](registry, target, previous)
        except (NotFound, SyncError, OSError) as e:
            return SyncResult(target.name, FAILED, message=str(e))

    def propagate(
        self,
        registry: Registry,
        targets: List[SyncTarget],
        previous: Optional[Registry] = None,
    ) -> SyncReport:
        """
        Syncs every target and, when all succeed, stores the synced snapshot.

        `previous` defaults to the snapshot stored by the last successful run.
        """
        if previous is None:
            previous = load_synced_snapshot(registry)
        report = SyncReport()
        for target in targets:
            result = self.sync_target(registry, target, previous)
            report.add(result)
            if result.status == FAILED:
                self.logger.error(f"Sync target {target.name} failed", reason=result.message)
            else:
                self.logger.debug(f"Sync target {target.name} {result.status}")

        if report.ok:
            snapshot = dump_json({str(registry.chain_id): registry.to_json()})
            self._write_if_changed(synced_snapshot_path(registry), snapshot)
        return report
