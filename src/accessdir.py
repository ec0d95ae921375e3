#!/usr/bin/env python3
"""
accessdir: a local directory of clients and their access points

Minimal external dependencies.
Stores clients and SSH/RDP/HTTPS access records as plain comma-delimited
files (one file per collection, fixed header row).
Uses TOML for user configuration only.
"""

import argparse
import os
import re
import stat
import sys
import tempfile
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Optional, Dict, Any, List, Tuple, Type, Union

try:
    import tomllib
except ImportError:
    import tomli as tomllib

import tomli_w

# ============================================================================
# Data Models
# ============================================================================


@dataclass
class Client:
    """A client owning zero or more access records."""

    id: str
    name: str
    tags: str = ""

    @property
    def key(self) -> str:
        return self.id


@dataclass
class SSHRecord:
    """SSH access point."""

    alias: str
    client_id: str
    name: str
    host: str
    port: int = 22
    user: str = ""
    tags: str = ""

    @property
    def key(self) -> str:
        return self.alias

    def belongs_to(self, client_id: str) -> bool:
        return FieldPolicy.same_key(self.client_id, client_id)


@dataclass
class RDPRecord:
    """Remote desktop access point."""

    alias: str
    client_id: str
    name: str
    host: str
    port: int = 3389
    domain: str = ""
    user: str = ""
    tags: str = ""

    @property
    def key(self) -> str:
        return self.alias

    def belongs_to(self, client_id: str) -> bool:
        return FieldPolicy.same_key(self.client_id, client_id)


@dataclass
class URLRecord:
    """HTTPS access point (firewall consoles, hypervisor UIs, ...)."""

    alias: str
    client_id: str
    name: str
    host: str
    port: int = 443
    path: str = "/"
    tags: str = ""

    @property
    def key(self) -> str:
        return self.alias

    def belongs_to(self, client_id: str) -> bool:
        return FieldPolicy.same_key(self.client_id, client_id)


Record = Union[Client, SSHRecord, RDPRecord, URLRecord]
AccessRecord = Union[SSHRecord, RDPRecord, URLRecord]


@dataclass(frozen=True)
class RecordKind:
    """Describes one persisted collection.

    The record class field order must match ``header``: the codec maps
    columns to fields positionally.
    """

    name: str
    filename: str
    header: Tuple[str, ...]
    record_cls: Type
    default_port: Optional[int] = None

    @property
    def header_line(self) -> str:
        return ",".join(self.header)

    @property
    def min_columns(self) -> int:
        return len(self.header)


CLIENTS = RecordKind(
    name="clients",
    filename="clients.csv",
    header=("client_id", "client_name", "tags"),
    record_cls=Client,
)
SSH = RecordKind(
    name="ssh",
    filename="ssh.csv",
    header=("alias", "client_id", "server_name", "host", "port", "user", "tags"),
    record_cls=SSHRecord,
    default_port=22,
)
RDP = RecordKind(
    name="rdp",
    filename="rdp.csv",
    header=("alias", "client_id", "server_name", "host", "port", "domain", "user", "tags"),
    record_cls=RDPRecord,
    default_port=3389,
)
URLS = RecordKind(
    name="urls",
    filename="urls.csv",
    header=("alias", "client_id", "name", "host", "port", "path", "tags"),
    record_cls=URLRecord,
    default_port=443,
)

# Cascade and reload order
KINDS: Tuple[RecordKind, ...] = (CLIENTS, SSH, RDP, URLS)

_KIND_BY_CLASS = {kind.record_cls: kind for kind in KINDS}


def kind_of(record: Record) -> RecordKind:
    """Return the RecordKind for a record instance."""
    try:
        return _KIND_BY_CLASS[type(record)]
    except KeyError:
        raise TypeError(f"Not a storable record: {type(record).__name__}")


@dataclass
class ClientAccesses:
    """Access records grouped by protocol."""

    ssh: Tuple[SSHRecord, ...] = ()
    rdp: Tuple[RDPRecord, ...] = ()
    urls: Tuple[URLRecord, ...] = ()

    def __len__(self) -> int:
        return len(self.ssh) + len(self.rdp) + len(self.urls)


# ============================================================================
# Errors
# ============================================================================


class AccessDirError(RuntimeError):
    """Base error for accessdir."""


class StoreWriteError(AccessDirError):
    """Raised when a collection file cannot be written."""

    def __init__(self, operation: str, path: Path, error: OSError):
        self.operation = operation
        self.path = Path(path)
        self.error = error
        reason = error.strerror or str(error)
        super().__init__(f"Failed to {operation} {self.path}: {reason}")


def warn(message: str):
    print(f"Warning: {message}", file=sys.stderr)


# ============================================================================
# Field Policy
# ============================================================================


class FieldPolicy:
    """Sanitization and defaulting rules applied to record fields."""

    MIN_PORT = 1
    MAX_PORT = 65535

    _PORT_RE = re.compile(r"[+-]?[0-9]+")
    _DELIMITERS = (",", "\n", "\r")

    @staticmethod
    def sanitize(value: Any) -> str:
        """
        Make a free-text value safe for a single delimited column.

        Commas, line feeds and carriage returns each become a space, then
        surrounding whitespace is stripped.
        """
        if value is None:
            return ""
        text = str(value)
        for ch in FieldPolicy._DELIMITERS:
            text = text.replace(ch, " ")
        return text.strip()

    @staticmethod
    def coerce_port(value: Any, default: int) -> int:
        """
        Coerce a port value, falling back to ``default``.

        Args:
            value: int, or text holding an (optionally signed) decimal number
            default: Kind default used for anything non-numeric or outside
                [1, 65535]

        Returns:
            A valid port number
        """
        if isinstance(value, bool):
            return default
        if isinstance(value, int):
            port = value
        elif isinstance(value, str):
            text = value.strip()
            if not FieldPolicy._PORT_RE.fullmatch(text):
                return default
            port = int(text)
        else:
            return default

        if FieldPolicy.MIN_PORT <= port <= FieldPolicy.MAX_PORT:
            return port
        return default

    @staticmethod
    def normalize_path(value: Any) -> str:
        path = FieldPolicy.sanitize(value)
        return path or "/"

    @staticmethod
    def same_key(a: Optional[str], b: Optional[str]) -> bool:
        """Case-insensitive key comparison."""
        if a is None or b is None:
            return False
        return a.casefold() == b.casefold()


# ============================================================================
# Record Codec
# ============================================================================


class RecordCodec:
    """Convert records to and from delimited lines.

    Decoding never raises: short rows are dropped and bad ports are
    replaced by the kind default.
    """

    DELIMITER = ","

    @staticmethod
    def split(line: str) -> List[str]:
        """Split a row, keeping empty columns."""
        return line.split(RecordCodec.DELIMITER)

    @staticmethod
    def decode(line: str, kind: RecordKind) -> Optional[Record]:
        """
        Parse one row into a record of ``kind``.

        Returns:
            The record, or None if the row has fewer columns than the header
        """
        columns = RecordCodec.split(line)
        if len(columns) < kind.min_columns:
            return None

        values = []
        for field, raw in zip(fields(kind.record_cls), columns):
            if field.name == "port":
                values.append(FieldPolicy.coerce_port(raw, kind.default_port))
            else:
                values.append(raw)
        return kind.record_cls(*values)

    @staticmethod
    def encode(record: Record, kind: Optional[RecordKind] = None) -> str:
        """Render a record as one sanitized row in header column order."""
        kind = kind or kind_of(record)
        columns = []
        for field in fields(record):
            value = getattr(record, field.name)
            if field.name == "port":
                columns.append(str(FieldPolicy.coerce_port(value, kind.default_port)))
            elif field.name == "path":
                columns.append(FieldPolicy.normalize_path(value))
            else:
                columns.append(FieldPolicy.sanitize(value))
        return RecordCodec.DELIMITER.join(columns)

    @staticmethod
    def key_of(line: str) -> Optional[str]:
        """First raw column of a row."""
        return RecordCodec.split(line)[0]

    @staticmethod
    def client_of(line: str) -> Optional[str]:
        """Second raw column of a row, or None if the row is too short."""
        columns = RecordCodec.split(line)
        if len(columns) < 2:
            return None
        return columns[1]


# ============================================================================
# File Storage
# ============================================================================


class CSVFileStorage:
    """Line storage for collection files with a fixed header row."""

    ENCODING = "utf-8"

    def ensure(self, path: Path, header: str):
        """Create ``path`` holding only the header, unless it already exists."""
        path = Path(path)
        if path.exists():
            return
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # "x" never clobbers a file created since the exists() check
            with open(path, "x", encoding=self.ENCODING, newline="") as f:
                f.write(header + "\n")
        except FileExistsError:
            pass
        except OSError as e:
            raise StoreWriteError("create", path, e) from e

    def read_all(self, path: Path) -> List[str]:
        """
        Read every non-empty line, header included.

        Returns:
            Lines in file order, or an empty list if the file cannot be read
        """
        path = Path(path)
        try:
            content = path.read_text(encoding=self.ENCODING)
        except FileNotFoundError:
            return []
        except (OSError, UnicodeDecodeError) as e:
            warn(f"Failed to read {path}: {e}")
            return []
        # Only "\n" separates rows; other line-break characters may live in fields
        lines = (line.rstrip("\r") for line in content.split("\n"))
        return [line for line in lines if line]

    def append(self, path: Path, line: str):
        """Append one row, creating the file if needed."""
        path = Path(path)
        try:
            with open(path, "a+b") as f:
                f.seek(0, os.SEEK_END)
                data = (line + "\n").encode(self.ENCODING)
                if f.tell() > 0:
                    f.seek(-1, os.SEEK_END)
                    if f.read(1) != b"\n":
                        data = b"\n" + data
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise StoreWriteError("append to", path, e) from e

    def atomic_replace(self, path: Path, header: str, rows: List[str]):
        """
        Replace the whole file with ``header`` followed by ``rows``.

        The content goes to a temporary file in the same directory which is
        then renamed over ``path``, so readers see the old or the new file,
        never a partial one.
        """
        path = Path(path)
        content = "\n".join([header] + list(rows)) + "\n"
        self.write_atomic(path, content)

    def write_atomic(self, path: Path, content: str):
        path = Path(path)
        temp_file = None
        try:
            with tempfile.NamedTemporaryFile(
                mode="w",
                encoding=self.ENCODING,
                newline="",
                dir=path.parent,
                prefix=f".{path.name}.",
                suffix=".tmp",
                delete=False,
            ) as f:
                temp_file = f.name
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            if path.exists():
                os.chmod(temp_file, stat.S_IMODE(os.stat(path).st_mode))
            os.replace(temp_file, path)
            temp_file = None
        except OSError as e:
            raise StoreWriteError("write", path, e) from e
        finally:
            if temp_file is not None:
                try:
                    os.unlink(temp_file)
                except OSError:
                    pass


# ============================================================================
# Record Store
# ============================================================================


class AccessStore:
    """Authoritative view of the four collections.

    Every mutation writes to disk and then reloads all collections, so the
    snapshots always reflect file content rather than the applied change.
    """

    def __init__(self, storage_root: Path, storage: Optional[CSVFileStorage] = None):
        """Initialize store.

        Args:
            storage_root: Directory holding the collection files
            storage: File layer (defaults to CSVFileStorage)
        """
        self.storage_root = Path(storage_root)
        self.storage = storage or CSVFileStorage()

        self._clients: Tuple[Client, ...] = ()
        self._ssh: Tuple[SSHRecord, ...] = ()
        self._rdp: Tuple[RDPRecord, ...] = ()
        self._urls: Tuple[URLRecord, ...] = ()

        self.ensure_files()
        self.reload()

    def path_for(self, kind: RecordKind) -> Path:
        return self.storage_root / kind.filename

    def ensure_files(self):
        """Create the storage root and any missing collection file."""
        try:
            self.storage_root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreWriteError("create", self.storage_root, e) from e
        for kind in KINDS:
            self.storage.ensure(self.path_for(kind), kind.header_line)

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    @property
    def clients(self) -> Tuple[Client, ...]:
        return self._clients

    @property
    def ssh(self) -> Tuple[SSHRecord, ...]:
        return self._ssh

    @property
    def rdp(self) -> Tuple[RDPRecord, ...]:
        return self._rdp

    @property
    def urls(self) -> Tuple[URLRecord, ...]:
        return self._urls

    def reload(self):
        """Re-parse every collection file from disk."""
        self._clients = tuple(
            sorted(self._load(CLIENTS), key=lambda c: c.name.lower())
        )
        self._ssh = tuple(self._load(SSH))
        self._rdp = tuple(self._load(RDP))
        self._urls = tuple(self._load(URLS))

    def _load(self, kind: RecordKind) -> List[Record]:
        records = []
        for line in self._rows(kind):
            record = RecordCodec.decode(line, kind)
            if record is not None:
                records.append(record)
        return records

    def _rows(self, kind: RecordKind) -> List[str]:
        """Data rows of a collection file (header skipped)."""
        return self.storage.read_all(self.path_for(kind))[1:]

    # ------------------------------------------------------------------
    # Generic mutations
    # ------------------------------------------------------------------

    def _add(self, record: Record):
        kind = kind_of(record)
        self.storage.append(self.path_for(kind), RecordCodec.encode(record, kind))
        self.reload()

    def _update(self, record: Record):
        kind = kind_of(record)
        encoded = RecordCodec.encode(record, kind)
        key = FieldPolicy.sanitize(record.key)
        rows = []
        for line in self._rows(kind):
            if (
                len(RecordCodec.split(line)) >= kind.min_columns
                and FieldPolicy.same_key(RecordCodec.key_of(line), key)
            ):
                rows.append(encoded)
            else:
                rows.append(line)
        self._rewrite(kind, rows)
        self.reload()

    def _delete(self, kind: RecordKind, key: str):
        self._rewrite(kind, self._without_key(kind, key))
        self.reload()

    def _without_key(self, kind: RecordKind, key: str) -> List[str]:
        key = FieldPolicy.sanitize(key)
        return [
            line for line in self._rows(kind)
            if not FieldPolicy.same_key(RecordCodec.key_of(line), key)
        ]

    def _without_client(self, kind: RecordKind, client_id: str) -> List[str]:
        client_id = FieldPolicy.sanitize(client_id)
        return [
            line for line in self._rows(kind)
            if not FieldPolicy.same_key(RecordCodec.client_of(line), client_id)
        ]

    def _rewrite(self, kind: RecordKind, rows: List[str]):
        self.storage.atomic_replace(self.path_for(kind), kind.header_line, rows)

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------

    def add_client(self, id: str, name: str, tags: str = ""):
        self._add(Client(id=id, name=name, tags=tags))

    def update_client(self, client: Client):
        self._update(client)

    def delete_client_cascade(self, client_id: str):
        """
        Delete a client and every SSH/RDP/URL record referencing it.

        Files are rewritten one at a time (clients, ssh, rdp, urls). A
        failure stops the sequence without undoing earlier rewrites; the
        collections are reloaded either way before the error propagates.

        Raises:
            StoreWriteError: If any rewrite fails
        """
        try:
            self._rewrite(CLIENTS, self._without_key(CLIENTS, client_id))
            for kind in (SSH, RDP, URLS):
                self._rewrite(kind, self._without_client(kind, client_id))
        finally:
            self.reload()

    # ------------------------------------------------------------------
    # SSH
    # ------------------------------------------------------------------

    def add_ssh(
        self,
        alias: str,
        client_id: str,
        name: str,
        host: str,
        port: Any = 22,
        user: str = "",
        tags: str = "",
    ):
        self._add(SSHRecord(alias, client_id, name, host, port, user, tags))

    def update_ssh(self, record: SSHRecord):
        self._update(record)

    def delete_ssh(self, alias: str):
        self._delete(SSH, alias)

    # ------------------------------------------------------------------
    # RDP
    # ------------------------------------------------------------------

    def add_rdp(
        self,
        alias: str,
        client_id: str,
        name: str,
        host: str,
        port: Any = 3389,
        domain: str = "",
        user: str = "",
        tags: str = "",
    ):
        self._add(RDPRecord(alias, client_id, name, host, port, domain, user, tags))

    def update_rdp(self, record: RDPRecord):
        self._update(record)

    def delete_rdp(self, alias: str):
        self._delete(RDP, alias)

    # ------------------------------------------------------------------
    # URLs
    # ------------------------------------------------------------------

    def add_url(
        self,
        alias: str,
        client_id: str,
        name: str,
        host: str,
        port: Any = 443,
        path: str = "/",
        tags: str = "",
    ):
        self._add(URLRecord(alias, client_id, name, host, port, path, tags))

    def update_url(self, record: URLRecord):
        self._update(record)

    def delete_url(self, alias: str):
        self._delete(URLS, alias)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @staticmethod
    def _find(records, key: str):
        for record in records:
            if FieldPolicy.same_key(record.key, key):
                return record
        return None

    def find_client(self, client_id: str) -> Optional[Client]:
        return self._find(self._clients, client_id)

    def find_ssh(self, alias: str) -> Optional[SSHRecord]:
        return self._find(self._ssh, alias)

    def find_rdp(self, alias: str) -> Optional[RDPRecord]:
        return self._find(self._rdp, alias)

    def find_url(self, alias: str) -> Optional[URLRecord]:
        return self._find(self._urls, alias)

    def accesses_for(self, client_id: str) -> ClientAccesses:
        """All access records whose clientId matches ``client_id``."""
        return ClientAccesses(
            ssh=tuple(r for r in self._ssh if r.belongs_to(client_id)),
            rdp=tuple(r for r in self._rdp if r.belongs_to(client_id)),
            urls=tuple(r for r in self._urls if r.belongs_to(client_id)),
        )

    def orphans(self) -> ClientAccesses:
        """Access records referencing a client that does not exist."""
        known = {c.id.casefold() for c in self._clients}

        def orphaned(record: AccessRecord) -> bool:
            return record.client_id.casefold() not in known

        return ClientAccesses(
            ssh=tuple(r for r in self._ssh if orphaned(r)),
            rdp=tuple(r for r in self._rdp if orphaned(r)),
            urls=tuple(r for r in self._urls if orphaned(r)),
        )


# ============================================================================
# Connection Targets
# ============================================================================


class ConnectionTargets:
    """Build what a launcher needs from a single record.

    Nothing here touches the store or starts a process.
    """

    RDP_SETTINGS = (
        "prompt for credentials on client:i:1",
        "authentication level:i:2",
        "redirectclipboard:i:1",
        "compression:i:1",
        "screen mode id:i:2",
        "use multimon:i:0",
    )

    @staticmethod
    def ssh_command(record: SSHRecord) -> List[str]:
        """Return the ssh argv for a record."""
        port = FieldPolicy.coerce_port(record.port, SSH.default_port)
        destination = f"{record.user}@{record.host}" if record.user else record.host
        return ["ssh", "-p", str(port), destination]

    @staticmethod
    def https_url(record: URLRecord) -> str:
        port = FieldPolicy.coerce_port(record.port, URLS.default_port)
        path = record.path or "/"
        if not path.startswith("/"):
            path = "/" + path
        return f"https://{record.host}:{port}{path}"

    @staticmethod
    def rdp_file_content(record: RDPRecord) -> str:
        """Render a .rdp document for a record."""
        port = FieldPolicy.coerce_port(record.port, RDP.default_port)
        lines = [
            f"full address:s:{record.host}",
            f"server port:i:{port}",
            "",
            f"username:s:{record.user}",
            f"domain:s:{record.domain}",
            "",
        ]
        lines.extend(ConnectionTargets.RDP_SETTINGS)
        return "\n".join(lines) + "\n"

    @staticmethod
    def write_rdp_file(
        record: RDPRecord,
        directory: Path,
        storage: Optional[CSVFileStorage] = None,
    ) -> Path:
        """
        Write ``<alias>.rdp`` under ``directory``.

        Returns:
            Path of the written file

        Raises:
            StoreWriteError: If the directory or file cannot be written
        """
        directory = Path(directory)
        storage = storage or CSVFileStorage()
        # Aliases are free text; keep the file inside directory
        safe_alias = re.sub(r"[\\/:]", "_", record.alias).strip(". ") or "rdp"
        path = directory / f"{safe_alias}.rdp"
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreWriteError("create", directory, e) from e
        storage.write_atomic(path, ConnectionTargets.rdp_file_content(record))
        return path


# ============================================================================
# Configuration
# ============================================================================


class StoreLocator:
    """Find the storage root and manage user configuration."""

    ENV_VAR = "ACCESSDIR_HOME"
    DEFAULT_DIRNAME = ".accessdir"

    @staticmethod
    def get_user_config_path() -> Path:
        """Return the path to the user configuration file (~/.config/accessdir/user.toml)."""
        return Path.home() / ".config" / "accessdir" / "user.toml"

    @staticmethod
    def get_user_config() -> Dict[str, Any]:
        """
        Load the user configuration.

        Returns:
            Configuration dict, or empty dict if the file is missing

        Raises:
            ValueError: If the file is not valid TOML or has bad values
        """
        config_path = StoreLocator.get_user_config_path()
        if not config_path.exists():
            return {}

        try:
            with open(config_path, "rb") as f:
                config = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ValueError(
                f"Invalid TOML syntax in {config_path}: {e}\n"
                f"To reset the storage location, run:\n\n"
                f"  accessdir admin config set-root <path>"
            )
        except OSError as e:
            raise ValueError(f"Failed to read user config from {config_path}: {e}")

        root = config.get("storage_root")
        if root is not None and (not isinstance(root, str) or not root.strip()):
            raise ValueError(
                f"Field 'storage_root' in {config_path} must be a non-empty string\n\n"
                f"To fix this, run:\n\n"
                f"  accessdir admin config set-root <path>"
            )

        rdp = config.get("rdp", {})
        if not isinstance(rdp, dict):
            raise ValueError(f"Section [rdp] in {config_path} must be a table")

        return config

    @staticmethod
    def set_user_config(config: Dict[str, Any]):
        """Save the user configuration."""
        config_path = StoreLocator.get_user_config_path()
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "wb") as f:
            tomli_w.dump(config, f)

    @staticmethod
    def resolve_storage_root(
        explicit_location: Optional[Union[str, Path]] = None,
        config: Optional[Dict[str, Any]] = None,
    ) -> Path:
        """
        Resolve the storage root directory.

        Priority order:
        1. Explicit location
        2. ACCESSDIR_HOME environment variable
        3. ``storage_root`` in user config
        4. ~/.accessdir
        """
        if explicit_location:
            return Path(explicit_location).expanduser().resolve()

        env_root = os.environ.get(StoreLocator.ENV_VAR)
        if env_root:
            return Path(env_root).expanduser().resolve()

        if config is None:
            config = StoreLocator.get_user_config()
        if config.get("storage_root"):
            return Path(config["storage_root"]).expanduser().resolve()

        return Path.home() / StoreLocator.DEFAULT_DIRNAME

    @staticmethod
    def rdp_files_dir(storage_root: Path, config: Optional[Dict[str, Any]] = None) -> Path:
        """Directory for generated .rdp files."""
        files_dir = (config or {}).get("rdp", {}).get("files_dir")
        if files_dir:
            return Path(files_dir).expanduser()
        return Path(storage_root) / "rdpfiles"


# ============================================================================
# CLI
# ============================================================================


# Per-kind CLI options: (flag, record field, help)
_ACCESS_OPTIONS = {
    "ssh": [
        ("--user", "user", "Login user"),
    ],
    "rdp": [
        ("--domain", "domain", "Windows domain"),
        ("--user", "user", "Login user"),
    ],
    "url": [
        ("--path", "path", "URL path (default: /)"),
    ],
}

_KIND_BY_GROUP = {"ssh": SSH, "rdp": RDP, "url": URLS}


class AccessCLI:
    """Command-line interface for the access directory."""

    def __init__(self):
        self.parser = argparse.ArgumentParser(
            prog="accessdir",
            description="accessdir: clients and their SSH/RDP/HTTPS access points",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument(
            "--location",
            help="Explicit storage directory (overrides all configuration)",
        )
        self.subparsers = self.parser.add_subparsers(dest="command", required=True)
        self._access_parsers = {}

    def _get_store(self, args) -> AccessStore:
        """Resolve the storage root and open the store."""
        config = self._get_config()
        root = StoreLocator.resolve_storage_root(
            explicit_location=getattr(args, "location", None),
            config=config,
        )
        return AccessStore(root)

    def _get_config(self) -> Dict[str, Any]:
        try:
            return StoreLocator.get_user_config()
        except ValueError as e:
            print(f"Configuration error: {e}", file=sys.stderr)
            sys.exit(1)

    def setup_commands(self):
        """Set up all CLI commands."""

        # ====================================================================
        # CLIENT COMMANDS
        # ====================================================================
        client_parser = self.subparsers.add_parser("client", help="Client management")
        client_subparsers = client_parser.add_subparsers(dest="client_command", required=True)

        client_add = client_subparsers.add_parser("add", help="Add a client")
        client_add.add_argument("client_id", help="Client ID")
        client_add.add_argument("name", help="Client name")
        client_add.add_argument("--tags", default="", help="Free-text tags")

        client_subparsers.add_parser("list", help="List clients")

        client_show = client_subparsers.add_parser("show", help="Show a client and its accesses")
        client_show.add_argument("client_id", help="Client ID")

        client_update = client_subparsers.add_parser("update", help="Update a client")
        client_update.add_argument("client_id", help="Client ID")
        client_update.add_argument("--name", help="New name")
        client_update.add_argument("--tags", help="New tags")

        client_delete = client_subparsers.add_parser(
            "delete",
            help="Delete a client and all of its accesses",
        )
        client_delete.add_argument("client_id", help="Client ID")

        # ====================================================================
        # ACCESS COMMANDS (ssh / rdp / url)
        # ====================================================================
        for group, label in (("ssh", "SSH"), ("rdp", "RDP"), ("url", "HTTPS")):
            self._setup_access_commands(group, label)

        self._access_parsers["ssh"].add_parser(
            "command", help="Print the ssh command line",
        ).add_argument("alias", help="Access alias")

        rdp_file = self._access_parsers["rdp"].add_parser(
            "file", help="Write a .rdp file for the access",
        )
        rdp_file.add_argument("alias", help="Access alias")
        rdp_file.add_argument("--dir", help="Output directory (default: <storage>/rdpfiles)")

        self._access_parsers["url"].add_parser(
            "link", help="Print the HTTPS URL",
        ).add_argument("alias", help="Access alias")

        # ====================================================================
        # ADMIN COMMANDS
        # ====================================================================
        admin_parser = self.subparsers.add_parser("admin", help="Administration")
        admin_subparsers = admin_parser.add_subparsers(dest="admin_command", required=True)

        admin_subparsers.add_parser("init", help="Create the storage files")
        admin_subparsers.add_parser("orphans", help="List accesses whose client does not exist")

        config_parser = admin_subparsers.add_parser("config", help="User configuration")
        config_subparsers = config_parser.add_subparsers(dest="config_command", required=True)
        config_subparsers.add_parser("show", help="Show configuration")
        set_root = config_subparsers.add_parser("set-root", help="Set the storage directory")
        set_root.add_argument("path", help="Storage directory")

    def _setup_access_commands(self, group: str, label: str):
        parser = self.subparsers.add_parser(group, help=f"{label} access management")
        subparsers = parser.add_subparsers(dest=f"{group}_command", required=True)
        self._access_parsers[group] = subparsers

        add = subparsers.add_parser("add", help=f"Add a {label} access")
        add.add_argument("alias", help="Access alias")
        add.add_argument("--client", required=True, dest="client_id", help="Owning client ID")
        add.add_argument("--name", required=True, help="Display name")
        add.add_argument("--host", required=True, help="Host name or address")
        add.add_argument("--port", help=f"Port (default: {_KIND_BY_GROUP[group].default_port})")
        for flag, dest, help_text in _ACCESS_OPTIONS[group]:
            add.add_argument(flag, dest=dest, default=None, help=help_text)
        add.add_argument("--tags", default="", help="Free-text tags")

        list_parser = subparsers.add_parser("list", help=f"List {label} accesses")
        list_parser.add_argument("--client", dest="client_id", help="Only this client's accesses")

        update = subparsers.add_parser("update", help=f"Update a {label} access")
        update.add_argument("alias", help="Access alias")
        update.add_argument("--client", dest="client_id", help="Owning client ID")
        update.add_argument("--name", help="Display name")
        update.add_argument("--host", help="Host name or address")
        update.add_argument("--port", help="Port")
        for flag, dest, help_text in _ACCESS_OPTIONS[group]:
            update.add_argument(flag, dest=dest, default=None, help=help_text)
        update.add_argument("--tags", help="Free-text tags")

        delete = subparsers.add_parser("delete", help=f"Delete a {label} access")
        delete.add_argument("alias", help="Access alias")

    def run(self, args: Optional[List[str]] = None):
        """Run CLI."""
        self.setup_commands()
        parsed = self.parser.parse_args(args)

        try:
            if parsed.command == "client":
                if parsed.client_command == "add":
                    self._cmd_client_add(parsed)
                elif parsed.client_command == "list":
                    self._cmd_client_list(parsed)
                elif parsed.client_command == "show":
                    self._cmd_client_show(parsed)
                elif parsed.client_command == "update":
                    self._cmd_client_update(parsed)
                elif parsed.client_command == "delete":
                    self._cmd_client_delete(parsed)

            elif parsed.command in _KIND_BY_GROUP:
                group = parsed.command
                sub = getattr(parsed, f"{group}_command")
                if sub == "add":
                    self._cmd_access_add(group, parsed)
                elif sub == "list":
                    self._cmd_access_list(group, parsed)
                elif sub == "update":
                    self._cmd_access_update(group, parsed)
                elif sub == "delete":
                    self._cmd_access_delete(group, parsed)
                elif sub == "command":
                    self._cmd_ssh_command(parsed)
                elif sub == "file":
                    self._cmd_rdp_file(parsed)
                elif sub == "link":
                    self._cmd_url_link(parsed)

            elif parsed.command == "admin":
                if parsed.admin_command == "init":
                    self._cmd_init(parsed)
                elif parsed.admin_command == "orphans":
                    self._cmd_orphans(parsed)
                elif parsed.admin_command == "config":
                    self._cmd_config(parsed)

        except RuntimeError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
        except KeyboardInterrupt:
            print("\nCancelled", file=sys.stderr)
            sys.exit(130)

    # ------------------------------------------------------------------
    # Formatting
    # ------------------------------------------------------------------

    @staticmethod
    def _describe(record: AccessRecord) -> str:
        if isinstance(record, SSHRecord):
            target = f"{record.user}@{record.host}:{record.port}" if record.user else f"{record.host}:{record.port}"
        elif isinstance(record, RDPRecord):
            target = f"{record.host}:{record.port}"
        else:
            target = ConnectionTargets.https_url(record)
        line = f"  {record.alias:<16} {record.name:<24} {target}"
        if record.tags:
            line += f"  [{record.tags}]"
        return line

    def _print_accesses(self, accesses: ClientAccesses):
        for label, records in (("SSH", accesses.ssh), ("RDP", accesses.rdp), ("HTTPS", accesses.urls)):
            print(f"\n{label}:")
            if not records:
                print("  (none)")
            for record in records:
                print(self._describe(record))

    # ------------------------------------------------------------------
    # Client commands
    # ------------------------------------------------------------------

    def _cmd_client_add(self, args):
        """Add client."""
        store = self._get_store(args)
        store.add_client(args.client_id, args.name, args.tags)
        print(f"✓ Added client: {FieldPolicy.sanitize(args.client_id)}")

    def _cmd_client_list(self, args):
        """List clients."""
        store = self._get_store(args)
        if not store.clients:
            print("No clients yet")
            return
        for client in store.clients:
            count = len(store.accesses_for(client.id))
            line = f"  {client.id:<16} {client.name:<32} {count} access(es)"
            if client.tags:
                line += f"  [{client.tags}]"
            print(line)

    def _cmd_client_show(self, args):
        """Show client with its accesses."""
        store = self._get_store(args)
        client = store.find_client(args.client_id)
        if not client:
            print(f"Error: Client {args.client_id} not found", file=sys.stderr)
            sys.exit(1)

        print("─" * 70)
        print(f"{client.name} ({client.id})")
        if client.tags:
            print(f"Tags: {client.tags}")
        print("─" * 70)
        self._print_accesses(store.accesses_for(client.id))

    def _cmd_client_update(self, args):
        """Update client fields."""
        store = self._get_store(args)
        client = store.find_client(args.client_id)
        if not client:
            print(f"Error: Client {args.client_id} not found", file=sys.stderr)
            sys.exit(1)

        changes = {k: v for k, v in (("name", args.name), ("tags", args.tags)) if v is not None}
        store.update_client(replace(client, **changes))
        print(f"✓ Updated client: {client.id}")

    def _cmd_client_delete(self, args):
        """Delete client with cascade."""
        store = self._get_store(args)
        client = store.find_client(args.client_id)
        removed = len(store.accesses_for(args.client_id))
        if not client and not removed:
            print(f"Error: Client {args.client_id} not found", file=sys.stderr)
            sys.exit(1)

        store.delete_client_cascade(args.client_id)
        print(f"✓ Deleted client {args.client_id} and {removed} access(es)")

    # ------------------------------------------------------------------
    # Access commands
    # ------------------------------------------------------------------

    def _find_access(self, store: AccessStore, group: str, alias: str) -> AccessRecord:
        finder = {"ssh": store.find_ssh, "rdp": store.find_rdp, "url": store.find_url}[group]
        record = finder(alias)
        if record is None:
            print(f"Error: {group.upper()} access {alias} not found", file=sys.stderr)
            sys.exit(1)
        return record

    def _cmd_access_add(self, group: str, args):
        """Add an access record."""
        store = self._get_store(args)
        kind = _KIND_BY_GROUP[group]

        if not store.find_client(args.client_id):
            warn(f"client {args.client_id} does not exist; access will be orphaned")

        values = {
            "alias": args.alias,
            "client_id": args.client_id,
            "name": args.name,
            "host": args.host,
            "tags": args.tags,
        }
        if args.port is not None:
            values["port"] = args.port
        for _, dest, _ in _ACCESS_OPTIONS[group]:
            if getattr(args, dest) is not None:
                values[dest] = getattr(args, dest)

        adders = {"ssh": store.add_ssh, "rdp": store.add_rdp, "url": store.add_url}
        adders[group](**values)

        if args.port is not None and FieldPolicy.coerce_port(args.port, -1) == -1:
            warn(f"invalid port {args.port!r}; using {kind.default_port}")
        print(f"✓ Added {group.upper()} access: {FieldPolicy.sanitize(args.alias)}")

    def _cmd_access_list(self, group: str, args):
        """List access records."""
        store = self._get_store(args)
        records = {"ssh": store.ssh, "rdp": store.rdp, "url": store.urls}[group]
        if args.client_id:
            records = tuple(r for r in records if r.belongs_to(args.client_id))

        if not records:
            print(f"No {group.upper()} accesses")
            return
        for record in records:
            print(f"{self._describe(record)}  (client: {record.client_id})")

    def _cmd_access_update(self, group: str, args):
        """Update an access record."""
        store = self._get_store(args)
        record = self._find_access(store, group, args.alias)

        changes = {}
        for dest in ["client_id", "name", "host", "port", "tags"] + [
            dest for _, dest, _ in _ACCESS_OPTIONS[group]
        ]:
            value = getattr(args, dest, None)
            if value is not None:
                changes[dest] = value

        updaters = {"ssh": store.update_ssh, "rdp": store.update_rdp, "url": store.update_url}
        updaters[group](replace(record, **changes))
        print(f"✓ Updated {group.upper()} access: {record.alias}")

    def _cmd_access_delete(self, group: str, args):
        """Delete an access record."""
        store = self._get_store(args)
        record = self._find_access(store, group, args.alias)

        deleters = {"ssh": store.delete_ssh, "rdp": store.delete_rdp, "url": store.delete_url}
        deleters[group](record.alias)
        print(f"✓ Deleted {group.upper()} access: {record.alias}")

    def _cmd_ssh_command(self, args):
        store = self._get_store(args)
        record = self._find_access(store, "ssh", args.alias)
        print(" ".join(ConnectionTargets.ssh_command(record)))

    def _cmd_rdp_file(self, args):
        store = self._get_store(args)
        record = self._find_access(store, "rdp", args.alias)
        directory = args.dir or StoreLocator.rdp_files_dir(store.storage_root, self._get_config())
        path = ConnectionTargets.write_rdp_file(record, directory, store.storage)
        print(f"✓ Wrote {path}")

    def _cmd_url_link(self, args):
        store = self._get_store(args)
        record = self._find_access(store, "url", args.alias)
        print(ConnectionTargets.https_url(record))

    # ------------------------------------------------------------------
    # Admin commands
    # ------------------------------------------------------------------

    def _cmd_init(self, args):
        """Initialize storage."""
        store = self._get_store(args)
        print(f"✓ Storage initialized at {store.storage_root}")
        for kind in KINDS:
            print(f"  {kind.name}: {store.path_for(kind)}")

    def _cmd_orphans(self, args):
        """List orphaned accesses."""
        store = self._get_store(args)
        orphans = store.orphans()
        if not len(orphans):
            print("No orphaned accesses")
            return
        print(f"Found {len(orphans)} orphaned access(es):")
        self._print_accesses(orphans)

    def _cmd_config(self, args):
        """Handle config commands."""
        if args.config_command == "show":
            config = self._get_config()
            root = StoreLocator.resolve_storage_root(
                explicit_location=getattr(args, "location", None),
                config=config,
            )
            print(f"Config file: {StoreLocator.get_user_config_path()}")
            print(f"Storage root: {root}")
            print(f"RDP files: {StoreLocator.rdp_files_dir(root, config)}")

        elif args.config_command == "set-root":
            config = self._get_config()
            root = Path(args.path).expanduser().resolve()
            config["storage_root"] = str(root)
            StoreLocator.set_user_config(config)
            print(f"✓ Storage root set to {root}")


# ============================================================================
# Main
# ============================================================================


def main():
    """Entry point."""
    cli = AccessCLI()
    cli.run()


if __name__ == "__main__":
    main()
