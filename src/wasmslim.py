#!/usr/bin/env python3
"""wasmslim.py - shrinks compiled wasm bundles

features:

- Applies size-oriented settings to every Cargo.toml of a project, keeping
  comments and formatting intact, with a disk backup before each write.
- Enables build-std on nightly toolchains via .cargo/config.toml
- Drives cargo -> wasm-bindgen -> wasm-opt -> wasm-snip and measures sizes
- Rolls manifests back when the build fails
- Validates the final artifact against a size budget

class structure:

Storage
ShellCmd
BackupManager
ManifestOptimizer
SecondaryConfigOptimizer
ToolchainDetector
ToolChain
ToolRunner
MetricsCollector
    NoOpCollector
    LoggingCollector
    MemoryCollector
BuildOrchestrator
BuildWorkflow

"""

import datetime
import enum
import logging
import os
import shutil
import subprocess
import time
import tomllib
import uuid
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Optional, Union

import tomlkit
from tomlkit.exceptions import TOMLKitError

__version__ = "0.1.0"

# ----------------------------------------------------------------------------
# type aliases

Pathlike = Union[str, Path]
TomlTable = Any  # tomlkit Table, InlineTable or OutOfOrderTableProxy


# ----------------------------------------------------------------------------
# env helpers


def getenv(key: str, default: bool = False) -> bool:
    """convert '0','1' env values to bool {True, False}"""
    return bool(int(os.getenv(key, default)))


# ----------------------------------------------------------------------------
# constants

CONFIG_FILE_NAME = ".wasm-slim.toml"
STATE_DIR = ".wasm-slim"
BACKUP_DIR = Path(STATE_DIR) / "backups"
MANIFEST_NAME = "Cargo.toml"
SECONDARY_CONFIG = Path(".cargo") / "config.toml"
WASM_SUFFIX = ".wasm"

IGNORED_DIRS = ["target", ".git", "node_modules", STATE_DIR, "pkg", "dist", ".cargo"]

# inherited coverage/instrumentation settings that break a child cargo build
STRIPPED_ENV_VARS = [
    "CARGO_INCREMENTAL",
    "RUSTFLAGS",
    "CARGO_ENCODED_RUSTFLAGS",
    "LLVM_PROFILE_FILE",
    "CARGO_LLVM_COV",
    "CARGO_LLVM_COV_TARGET_DIR",
    "RUSTC_WRAPPER",
    "RUSTC_WORKSPACE_WRAPPER",
]

WASM_TARGETS = ["wasm32-unknown-unknown", "wasm32-wasi", "wasm32-unknown-emscripten"]
BINDGEN_TARGETS = ["web", "nodejs", "bundler", "deno", "no-modules"]
OPT_LEVELS = ["O1", "O2", "O3", "O4", "Oz"]

WASM_OPT_FEATURE_FLAGS = [
    "--enable-mutable-globals",
    "--enable-bulk-memory",
    "--enable-sign-ext",
    "--enable-nontrapping-float-to-int",
]

# dependency -> minimal feature set used with default-features = false
HEAVY_DEPENDENCIES = {
    "image": ["png"],
    "lopdf": ["pom_parser"],
}

INSTALL_HINTS = {
    "cargo": "curl --proto '=https' --tlsv1.2 -sSf https://sh.rustup.rs | sh",
    "wasm-bindgen": "cargo install wasm-bindgen-cli",
    "wasm-opt": "brew install binaryen | sudo apt install binaryen",
    "wasm-snip": "cargo install wasm-snip",
}

# ----------------------------------------------------------------------------
# envar options

DEBUG = getenv("DEBUG", default=True)
COLOR = getenv("COLOR", default=True)

# ----------------------------------------------------------------------------
# logging config


class CustomFormatter(logging.Formatter):
    """custom logging formatting class"""

    white = "\x1b[97;20m"
    grey = "\x1b[38;20m"
    green = "\x1b[32;20m"
    cyan = "\x1b[36;20m"
    yellow = "\x1b[33;20m"
    red = "\x1b[31;20m"
    bold_red = "\x1b[31;1m"
    reset = "\x1b[0m"
    fmt = "%(delta)s - %(levelname)s - %(name)s.%(funcName)s - %(message)s"
    cfmt = (
        f"{white}%(delta)s{reset} - "
        f"{{}}%(levelname)s{{}} - "
        f"{white}%(name)s.%(funcName)s{reset} - "
        f"{grey}%(message)s{reset}"
    )

    FORMATS = {
        logging.DEBUG: cfmt.format(grey, reset),
        logging.INFO: cfmt.format(green, reset),
        logging.WARNING: cfmt.format(yellow, reset),
        logging.ERROR: cfmt.format(red, reset),
        logging.CRITICAL: cfmt.format(bold_red, reset),
    }

    def __init__(self, use_color: bool = COLOR) -> None:
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        """custom logger formatting method"""
        if not self.use_color:
            log_fmt: str = self.fmt
        else:
            log_fmt = self.FORMATS.get(record.levelno, self.fmt)
        duration = datetime.datetime.fromtimestamp(
            record.relativeCreated / 1000, datetime.UTC
        )
        record.delta = duration.strftime("%H:%M:%S")
        formatter = logging.Formatter(log_fmt)
        return formatter.format(record)


strm_handler = logging.StreamHandler()
strm_handler.setFormatter(CustomFormatter())
logging.basicConfig(
    level=logging.DEBUG if DEBUG else logging.INFO,
    handlers=[strm_handler],
)


# ----------------------------------------------------------------------------
# custom exceptions


class WasmSlimError(Exception):
    """Base exception for wasm-slim errors"""

    pass


class CommandError(WasmSlimError):
    """Exception for command execution errors"""

    def __init__(self, msg: str, returncode: Optional[int] = None) -> None:
        super().__init__(msg)
        self.returncode = returncode


class ConfigError(WasmSlimError):
    """Exception for invalid configuration values"""

    pass


class ToolMissingError(WasmSlimError):
    """A tool needed by the pipeline is absent or unusable"""

    def __init__(self, tool: str, hint: Optional[str] = None) -> None:
        msg = f"{tool} is required but not found in PATH"
        if hint:
            msg += f" (install with: {hint})"
        super().__init__(msg)
        self.tool = tool
        self.hint = hint


class ManifestParseError(WasmSlimError):
    """A manifest could not be parsed; the file is skipped"""

    def __init__(self, path: Pathlike, reason: str) -> None:
        super().__init__(f"Failed to parse {path}: {reason}")
        self.path = Path(path)
        self.reason = reason


class ManifestStructureError(ManifestParseError):
    """A manifest key has an unexpected shape"""

    pass


class ManifestIoError(WasmSlimError):
    """Reading, backing up or writing a manifest failed"""

    def __init__(self, path: Pathlike, reason: str) -> None:
        super().__init__(f"I/O error on {path}: {reason}")
        self.path = Path(path)
        self.reason = reason


class BackupError(ManifestIoError):
    """Exception for backup creation errors"""

    def __init__(self, path: Pathlike, reason: str) -> None:
        WasmSlimError.__init__(self, f"Failed to copy file {path}: {reason}")
        self.path = Path(path)
        self.reason = reason


class SecondaryConfigError(WasmSlimError):
    """The secondary build config has an unexpected structure"""

    def __init__(self, path: Pathlike, reason: str) -> None:
        super().__init__(f"Invalid {path} structure: {reason}")
        self.path = Path(path)
        self.reason = reason


class StageFailedError(WasmSlimError):
    """An external pipeline stage exited unsuccessfully"""

    def __init__(self, stage: str, returncode: Optional[int] = None) -> None:
        msg = f"{stage} failed"
        if returncode is not None:
            msg += f" (exit status {returncode})"
        super().__init__(msg)
        self.stage = stage
        self.returncode = returncode


class ArtifactNotFoundError(WasmSlimError):
    """A stage finished without producing a wasm artifact"""

    def __init__(self, stage: str, directory: Pathlike) -> None:
        super().__init__(f"No {WASM_SUFFIX} file found in {directory} after {stage}")
        self.stage = stage
        self.directory = Path(directory)


class BudgetExceededError(WasmSlimError):
    """Final artifact is larger than the configured maximum"""

    def __init__(self, actual: int, maximum: int) -> None:
        self.actual = actual
        self.maximum = maximum
        if maximum > 0:
            self.percent_over = (actual - maximum) / maximum * 100.0
        else:
            self.percent_over = float("inf")
        super().__init__(
            f"WASM bundle size ({actual} bytes) exceeds maximum ({maximum} bytes) "
            f"by {self.percent_over:.1f}%"
        )


# ----------------------------------------------------------------------------
# dataclasses


@dataclass
class PipelineConfig:
    """Resolved build pipeline settings."""

    target: str = "wasm32-unknown-unknown"
    profile: str = "release"
    target_dir: Optional[Path] = None
    bindgen_target: str = "web"
    opt_level: str = "Oz"
    run_wasm_opt: bool = True
    run_wasm_snip: bool = False
    strict_tools: bool = False

    def __post_init__(self) -> None:
        if self.target not in WASM_TARGETS:
            raise ConfigError(f"unknown wasm target: {self.target}")
        if self.bindgen_target not in BINDGEN_TARGETS:
            raise ConfigError(f"unknown wasm-bindgen target: {self.bindgen_target}")
        if self.opt_level not in OPT_LEVELS:
            raise ConfigError(f"unknown wasm-opt level: {self.opt_level}")
        if self.target_dir is not None:
            self.target_dir = Path(self.target_dir)

    @property
    def opt_level_arg(self) -> str:
        """wasm-opt flag: -Oz"""
        return f"-{self.opt_level}"

    @property
    def profile_dir(self) -> str:
        """cargo output folder for profile: 'dev' builds land in 'debug'"""
        return "debug" if self.profile == "dev" else self.profile


@dataclass
class ProfileConfig:
    """[profile.release] values applied to every manifest"""

    opt_level: str = "s"
    lto: str = "fat"
    strip: bool = True
    codegen_units: int = 1
    panic: str = "abort"


@dataclass
class BuildStdConfig:
    """build-std settings written to .cargo/config.toml (nightly only)"""

    enabled: bool = True
    std_components: list[str] = field(
        default_factory=lambda: ["std", "panic_abort", "core", "alloc"]
    )
    features: list[str] = field(default_factory=lambda: ["panic_immediate_abort"])
    target: Optional[str] = None
    rustflags: list[str] = field(default_factory=list)

    @classmethod
    def with_ssr(cls, target: str) -> "BuildStdConfig":
        """server-side rendering variant: pins target and std cfg"""
        return cls(target=target, rustflags=["--cfg=has_std"])


@dataclass
class BudgetConfig:
    """Size thresholds in KB. Only max_size_kb is enforced."""

    target_size_kb: Optional[int] = None
    warn_threshold_kb: Optional[int] = None
    max_size_kb: Optional[int] = None

    def validate(self) -> None:
        """check thresholds are positive integers ordered target <= warn <= max"""
        for name, value in [
            ("target-size-kb", self.target_size_kb),
            ("warn-threshold-kb", self.warn_threshold_kb),
            ("max-size-kb", self.max_size_kb),
        ]:
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigError(f"{name} must be an integer, got {value!r}")
            if value <= 0:
                raise ConfigError(f"{name} must be positive, got {value}")
        pairs = [
            ("target-size-kb", self.target_size_kb, "warn-threshold-kb", self.warn_threshold_kb),
            ("warn-threshold-kb", self.warn_threshold_kb, "max-size-kb", self.max_size_kb),
            ("target-size-kb", self.target_size_kb, "max-size-kb", self.max_size_kb),
        ]
        for low_name, low, high_name, high in pairs:
            if low is not None and high is not None and low > high:
                raise ConfigError(
                    f"{low_name} ({low} KB) cannot exceed {high_name} ({high} KB)"
                )

    @property
    def max_bytes(self) -> Optional[int]:
        if self.max_size_kb is None:
            return None
        return self.max_size_kb * 1024


@dataclass
class ProjectConfig:
    """Everything read from .wasm-slim.toml"""

    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    profile: ProfileConfig = field(default_factory=ProfileConfig)


@dataclass
class SizeMetrics:
    """Measured artifact sizes before and after optimization"""

    before_bytes: int
    after_bytes: int

    @property
    def reduction_bytes(self) -> int:
        return self.before_bytes - self.after_bytes

    @property
    def reduction_percent(self) -> float:
        if self.before_bytes == 0:
            return 0.0
        return self.reduction_bytes / self.before_bytes * 100.0


@dataclass
class BackupRecord:
    """Original content of a file mutated in this run.

    original_bytes is None when the file did not exist beforehand.
    """

    path: Path
    original_bytes: Optional[bytes]


@dataclass
class ManifestOutcome:
    """Result of a manifest optimization pass"""

    changes: list[str] = field(default_factory=list)
    dry_run_files: list[str] = field(default_factory=list)
    backups: list[BackupRecord] = field(default_factory=list)
    backup_files: list[Path] = field(default_factory=list)


@dataclass
class BuildResult:
    """Outcome of BuildWorkflow.execute handed to the presentation layer"""

    changes: list[str]
    metrics: SizeMetrics
    budget_check_passed: Optional[bool] = None
    budget_threshold: Optional[int] = None
    dry_run: bool = False
    dry_run_files: list[str] = field(default_factory=list)
    backup_files: list[Path] = field(default_factory=list)


@dataclass
class Tool:
    """External tool descriptor"""

    name: str
    binary: str
    version_flag: str = "--version"
    required: bool = True

    @property
    def hint(self) -> Optional[str]:
        return INSTALL_HINTS.get(self.binary)


# ----------------------------------------------------------------------------
# config loading


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name, {})
    if not isinstance(value, dict):
        raise ConfigError(f"[{name}] must be a table in {CONFIG_FILE_NAME}")
    return value


def _option(section: dict[str, Any], key: str, kind: type, default: Any) -> Any:
    """section[key] checked against kind; bools are not accepted as ints"""
    value = section.get(key, default)
    if value is None:
        return None
    if isinstance(value, bool) != (kind is bool) or not isinstance(value, kind):
        raise ConfigError(
            f"{key} must be of type {kind.__name__} in {CONFIG_FILE_NAME}, got {value!r}"
        )
    return value


def load_config(project_root: Pathlike) -> ProjectConfig:
    """Read .wasm-slim.toml from project_root, falling back to defaults.

    Raises:
        ConfigError: if the file is malformed or holds invalid values
    """
    path = Path(project_root) / CONFIG_FILE_NAME
    if not path.exists():
        return ProjectConfig()
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Failed to parse {path}: {e}") from e

    profile_data = _section(data, "profile")
    budget_data = _section(data, "size-budget")
    pipeline_data = _section(data, "pipeline")

    defaults = ProfileConfig()
    # opt-level may be an integer (3) or a string ("s")
    opt_level = profile_data.get("opt-level", defaults.opt_level)
    if isinstance(opt_level, bool) or not isinstance(opt_level, (int, str)):
        raise ConfigError(f"opt-level must be a string or integer, got {opt_level!r}")
    profile = ProfileConfig(
        opt_level=str(opt_level),
        lto=_option(profile_data, "lto", str, defaults.lto),
        strip=_option(profile_data, "strip", bool, defaults.strip),
        codegen_units=_option(profile_data, "codegen-units", int, defaults.codegen_units),
        panic=_option(profile_data, "panic", str, defaults.panic),
    )

    budget = BudgetConfig(
        target_size_kb=_option(budget_data, "target-size-kb", int, None),
        warn_threshold_kb=_option(budget_data, "warn-threshold-kb", int, None),
        max_size_kb=_option(budget_data, "max-size-kb", int, None),
    )
    budget.validate()

    target_dir = _option(pipeline_data, "target-dir", str, None)
    pipeline = PipelineConfig(
        target=_option(pipeline_data, "target", str, "wasm32-unknown-unknown"),
        profile=_option(pipeline_data, "profile", str, "release"),
        target_dir=Path(project_root) / target_dir if target_dir else None,
        bindgen_target=_option(pipeline_data, "bindgen-target", str, "web"),
        opt_level=_option(pipeline_data, "opt-level", str, "Oz"),
        run_wasm_opt=_option(pipeline_data, "wasm-opt", bool, True),
        run_wasm_snip=_option(pipeline_data, "wasm-snip", bool, False),
        strict_tools=_option(pipeline_data, "strict-tools", bool, False),
    )
    return ProjectConfig(pipeline=pipeline, budget=budget, profile=profile)


# ----------------------------------------------------------------------------
# capability classes


class Storage:
    """Provides platform agnostic file/folder handling."""

    def __init__(self) -> None:
        self.log = logging.getLogger(self.__class__.__name__)

    def exists(self, path: Pathlike) -> bool:
        return Path(path).exists()

    def size(self, path: Pathlike) -> int:
        """size in bytes from a fresh stat()"""
        return Path(path).stat().st_size

    def read_bytes(self, path: Pathlike) -> bytes:
        return Path(path).read_bytes()

    def write_bytes(self, path: Pathlike, data: bytes) -> None:
        self.log.debug("Writing %d bytes to %s", len(data), path)
        Path(path).write_bytes(data)

    def makedirs(self, path: Pathlike, exist_ok: bool = True) -> None:
        """Recursive directory creation function"""
        self.log.debug("Making directory: %s", path)
        os.makedirs(path, exist_ok=exist_ok)

    def copy(self, src: Pathlike, dst: Pathlike) -> None:
        """copy file contents verbatim"""
        self.log.debug("copy %s to %s", src, dst)
        shutil.copyfile(src, dst)

    def replace(self, src: Pathlike, dst: Pathlike) -> None:
        """Move src over dst."""
        self.log.debug("Replacing %s with %s", dst, src)
        os.replace(src, dst)

    def remove(self, path: Pathlike) -> None:
        """Remove file."""
        self.log.debug("Removing file: %s", path)
        Path(path).unlink()

    def glob(self, folder: Pathlike, pattern: str) -> list[Path]:
        """sorted glob matches in folder"""
        return sorted(p for p in Path(folder).glob(pattern) if p.is_file())

    def find_files(
        self, root: Pathlike, name: str, skip_dirs: Optional[list[str]] = None
    ) -> list[Path]:
        """recursive search for files called name, pruning skip_dirs"""
        found = []
        skip_dirs = skip_dirs or []
        for root_, dirs, filenames in os.walk(root):
            dirs[:] = sorted(d for d in dirs if d not in skip_dirs)
            if name in filenames:
                found.append(Path(root_) / name)
        return sorted(found)


def scrubbed_env() -> dict[str, str]:
    """copy of os.environ without the parent's instrumentation variables"""
    return {k: v for k, v in os.environ.items() if k not in STRIPPED_ENV_VARS}


class ShellCmd:
    """Runs external processes synchronously."""

    def __init__(self) -> None:
        self.log = logging.getLogger(self.__class__.__name__)

    def cmd(
        self,
        args: list[str],
        cwd: Pathlike = ".",
        env: Optional[dict[str, str]] = None,
    ) -> None:
        """Run command within working directory

        Args:
            args: Command and its arguments
            cwd: Working directory for command execution
            env: Replacement environment for the child

        Raises:
            CommandError: If the command cannot be spawned or exits non-zero
        """
        self.log.info(" ".join(args))
        try:
            subprocess.check_call(args, cwd=str(cwd), env=env)
        except subprocess.CalledProcessError as e:
            self.log.critical("Command failed: %s", e)
            raise CommandError(
                f"Command failed: {' '.join(args)}", returncode=e.returncode
            ) from e
        except OSError as e:
            self.log.critical("Command could not start: %s", e)
            raise CommandError(f"Command could not start: {args[0]}") from e

    def get(
        self,
        args: list[str],
        cwd: Pathlike = ".",
        env: Optional[dict[str, str]] = None,
    ) -> str:
        """get stripped stdout of command"""
        try:
            return subprocess.check_output(
                args, encoding="utf8", cwd=str(cwd), env=env
            ).strip()
        except subprocess.CalledProcessError as e:
            raise CommandError(
                f"Command failed: {' '.join(args)}", returncode=e.returncode
            ) from e
        except OSError as e:
            raise CommandError(f"Command could not start: {args[0]}") from e

    def which(self, binary: str) -> Optional[str]:
        return shutil.which(binary)


# ----------------------------------------------------------------------------
# backups


def format_timestamp(now: Optional[datetime.datetime] = None) -> str:
    """backup timestamp: 20240131_235959.123"""
    now = now or datetime.datetime.now(datetime.UTC)
    return now.strftime("%Y%m%d_%H%M%S.") + f"{now.microsecond // 1000:03d}"


class BackupManager:
    """Creates immutable, uniquely named copies of files before mutation.

    Backups accumulate under <project_root>/.wasm-slim/backups and are never
    rotated. uuid4 draws from os.urandom so concurrent callers, in the same
    or different processes, never produce the same name.
    """

    def __init__(self, project_root: Pathlike, storage: Optional[Storage] = None):
        self.project_root = Path(project_root)
        self.backup_dir = self.project_root / BACKUP_DIR
        self.storage = storage or Storage()
        self.log = logging.getLogger(self.__class__.__name__)

    def backup_name(self, source: Path) -> str:
        return f"{source.name}.{format_timestamp()}.{uuid.uuid4().hex}.backup"

    def create_backup(self, source: Pathlike) -> Path:
        """Copy source into the backup directory.

        Returns:
            Path of the new backup file

        Raises:
            BackupError: source missing or unreadable, or backup dir not writable
        """
        source = Path(source)
        if not source.name:
            raise BackupError(source, "Invalid source filename")
        try:
            self.storage.makedirs(self.backup_dir)
        except OSError as e:
            raise BackupError(source, f"cannot create {self.backup_dir}: {e}") from e

        backup_path = self.backup_dir / self.backup_name(source)
        try:
            self.storage.copy(source, backup_path)
        except OSError as e:
            raise BackupError(source, str(e)) from e
        self.log.info("backed up %s -> %s", source, backup_path)
        return backup_path

    def list_backups(self, filename: Optional[str] = None) -> list[Path]:
        """existing backups, optionally only those of filename"""
        if not self.storage.exists(self.backup_dir):
            return []
        pattern = f"{filename}.*.backup" if filename else "*.backup"
        return self.storage.glob(self.backup_dir, pattern)


# ----------------------------------------------------------------------------
# toml helpers


def _plain(item: Any) -> Any:
    """strip tomlkit wrappers: String -> str, Integer -> int, Array -> list"""
    return item.unwrap() if hasattr(item, "unwrap") else item


def _same(existing: Any, wanted: Any) -> bool:
    """value equality that does not confuse bools with ints"""
    if isinstance(existing, bool) != isinstance(wanted, bool):
        return False
    return bool(_plain(existing) == wanted)


def _is_table(item: Any) -> bool:
    return isinstance(item, dict)


def _child_table(
    parent: TomlTable, key: str, dotted: str, error: type, path: Path, super_table: bool
) -> TomlTable:
    """get or create parent[key] as a table, raising error on a shape mismatch"""
    item = parent.get(key)
    if item is None:
        parent[key] = tomlkit.table(is_super_table=super_table)
        item = parent[key]
    if not _is_table(item):
        raise error(path, f"{dotted} is not a table")
    return item


def _feature_list(features: list[str]) -> Any:
    arr = tomlkit.array()
    arr.extend(features)
    return arr


# ----------------------------------------------------------------------------
# manifest optimization


class ManifestOptimizer:
    """Applies size-oriented edits to every Cargo.toml of a project.

    Every edit checks the current value before writing, so a second pass over
    an optimized manifest reports no changes and leaves its bytes untouched.
    Edits go through tomlkit so comments, ordering and whitespace survive.
    """

    def __init__(
        self,
        project_root: Pathlike,
        profile: Optional[ProfileConfig] = None,
        wasm_opt_flags: Optional[list[str]] = None,
        storage: Optional[Storage] = None,
        backup_manager: Optional[BackupManager] = None,
    ):
        self.project_root = Path(project_root)
        self.profile = profile or ProfileConfig()
        self.wasm_opt_flags = wasm_opt_flags
        self.storage = storage or Storage()
        self.backup_manager = backup_manager or BackupManager(
            self.project_root, self.storage
        )
        self.log = logging.getLogger(self.__class__.__name__)

    def find_manifests(self) -> list[Path]:
        """all Cargo.toml files under the project root"""
        return self.storage.find_files(self.project_root, MANIFEST_NAME, IGNORED_DIRS)

    def relative(self, path: Path) -> str:
        try:
            return path.relative_to(self.project_root).as_posix()
        except ValueError:
            return str(path)

    def read(self, path: Path) -> bytes:
        try:
            return self.storage.read_bytes(path)
        except OSError as e:
            raise ManifestIoError(path, str(e)) from e

    def parse(self, path: Path, content: bytes) -> tomlkit.TOMLDocument:
        try:
            return tomlkit.parse(content.decode("utf-8"))
        except (TOMLKitError, UnicodeDecodeError) as e:
            raise ManifestParseError(path, str(e)) from e

    def plan(self, path: Path, content: bytes) -> tuple[tomlkit.TOMLDocument, list[str]]:
        """parse content and apply all edits in memory

        Raises:
            ManifestParseError: content is not valid TOML or has a bad shape
        """
        doc = self.parse(path, content)
        changes: list[str] = []
        self.apply_profile(doc, path, changes)
        if self.wasm_opt_flags is not None:
            self.apply_wasm_pack(doc, path, changes)
        for deps in self.dependency_tables(doc, path):
            self.apply_feature_minimization(deps, path, changes)
            self.apply_platform_fixes(deps, path, changes)
        return doc, changes

    def apply_profile(
        self, doc: tomlkit.TOMLDocument, path: Path, changes: list[str]
    ) -> None:
        """[profile.release] size settings"""
        profile = _child_table(
            doc, "profile", "profile", ManifestStructureError, path, True
        )
        release = _child_table(
            profile, "release", "profile.release", ManifestStructureError, path, False
        )
        cfg = self.profile

        if not _same(release.get("lto"), cfg.lto):
            release["lto"] = cfg.lto
            changes.append(f'Set lto = "{cfg.lto}" (15-30% reduction)')

        if not _same(release.get("codegen-units"), cfg.codegen_units):
            release["codegen-units"] = cfg.codegen_units
            changes.append(
                f"Set codegen-units = {cfg.codegen_units} (better optimization)"
            )

        # opt-level may be written as an integer (3) or a string ("s")
        opt_level = release.get("opt-level")
        if (
            opt_level is None
            or isinstance(opt_level, bool)
            or str(_plain(opt_level)) != cfg.opt_level
        ):
            release["opt-level"] = cfg.opt_level
            changes.append(f'Set opt-level = "{cfg.opt_level}" (size-optimized)')

        if not _same(release.get("strip"), cfg.strip):
            release["strip"] = cfg.strip
            changes.append(f"Set strip = {str(cfg.strip).lower()} (remove debug symbols)")

        if not _same(release.get("panic"), cfg.panic):
            release["panic"] = cfg.panic
            changes.append(f'Set panic = "{cfg.panic}" (smaller panic handler)')

    def apply_wasm_pack(
        self, doc: tomlkit.TOMLDocument, path: Path, changes: list[str]
    ) -> None:
        """[package.metadata.wasm-pack.profile.release] wasm-opt flags"""
        flags = list(self.wasm_opt_flags or [])
        table = doc
        dotted = []
        keys = ["package", "metadata", "wasm-pack", "profile", "release"]
        for i, key in enumerate(keys):
            dotted.append(key)
            table = _child_table(
                table,
                key,
                ".".join(dotted),
                ManifestStructureError,
                path,
                super_table=i > 0 and i < len(keys) - 1,
            )
        existing = table.get("wasm-opt")
        if isinstance(existing, list) and _plain(existing) == flags:
            return
        table["wasm-opt"] = _feature_list(flags)
        changes.append(f"Set wasm-opt flags ({len(flags)} optimizations)")

    def dependency_tables(
        self, doc: tomlkit.TOMLDocument, path: Path
    ) -> list[TomlTable]:
        """[dependencies] plus every [target.<cfg>.dependencies]"""
        tables = []
        deps = doc.get("dependencies")
        if deps is not None:
            if not _is_table(deps):
                raise ManifestStructureError(path, "dependencies is not a table")
            tables.append(deps)
        targets = doc.get("target")
        if _is_table(targets):
            for cfg in targets.values():
                if _is_table(cfg) and _is_table(cfg.get("dependencies")):
                    tables.append(cfg["dependencies"])
        return tables

    def apply_feature_minimization(
        self, deps: TomlTable, path: Path, changes: list[str]
    ) -> None:
        """default-features = false plus a minimal feature set for heavy deps"""
        for name, features in HEAVY_DEPENDENCIES.items():
            dep = deps.get(name)
            if dep is None:
                continue
            if isinstance(dep, str):
                table = tomlkit.inline_table()
                table.update(
                    {
                        "version": _plain(dep),
                        "default-features": False,
                        "features": _feature_list(features),
                    }
                )
                deps[name] = table
            elif _is_table(dep):
                if "default-features" in dep:
                    continue
                dep["default-features"] = False
                if "features" not in dep:
                    dep["features"] = _feature_list(features)
            else:
                raise ManifestStructureError(path, f"dependency {name} has bad shape")
            changes.append(
                f"Set default-features = false on {name} (features: {', '.join(features)})"
            )

    def getrandom_feature(self, version: Optional[str]) -> str:
        """getrandom 0.2 calls its wasm feature 'js', later releases 'wasm_js'"""
        if not version:
            return "wasm_js"
        version = version.lstrip("^=~ ")
        if version == "0.2" or version.startswith("0.2."):
            return "js"
        return "wasm_js"

    def apply_platform_fixes(
        self, deps: TomlTable, path: Path, changes: list[str]
    ) -> None:
        """enable wasm entropy backend for getrandom"""
        dep = deps.get("getrandom")
        if dep is None:
            return
        if isinstance(dep, str):
            feature = self.getrandom_feature(_plain(dep))
            table = tomlkit.inline_table()
            table.update({"version": _plain(dep), "features": _feature_list([feature])})
            deps["getrandom"] = table
        elif _is_table(dep):
            version = dep.get("version")
            feature = self.getrandom_feature(str(_plain(version)) if version else None)
            features = dep.get("features")
            if features is None:
                dep["features"] = _feature_list([feature])
            elif isinstance(features, list):
                if feature in _plain(features):
                    return
                features.append(feature)
            else:
                raise ManifestStructureError(path, "getrandom.features is not an array")
        else:
            raise ManifestStructureError(path, "dependency getrandom has bad shape")
        changes.append(f'Enable getrandom feature "{feature}" (wasm support)')

    def optimize_file(self, path: Pathlike, dry_run: bool = False) -> list[str]:
        """Optimize a single manifest without taking a backup.

        Returns:
            descriptions of the edits made (or that would be made)
        """
        path = Path(path)
        doc, changes = self.plan(path, self.read(path))
        if changes and not dry_run:
            self.write(path, doc)
        return changes

    def write(self, path: Path, doc: tomlkit.TOMLDocument) -> None:
        try:
            self.storage.write_bytes(path, tomlkit.dumps(doc).encode("utf-8"))
        except OSError as e:
            raise ManifestIoError(path, str(e)) from e

    def optimize(
        self,
        dry_run: bool = False,
        records: Optional[list[BackupRecord]] = None,
    ) -> ManifestOutcome:
        """Optimize every manifest of the project.

        Each file is parsed and planned first; a file that fails to parse is
        skipped. Files with pending edits are backed up to disk and recorded
        in memory before being written. In dry-run mode only the list of files
        that would change is collected.

        Args:
            dry_run: preview only, no backups and no writes
            records: list that receives BackupRecords as they are taken, so a
                caller can roll back even if a later file fails

        Raises:
            ManifestIoError: a read, backup or write failed
        """
        outcome = ManifestOutcome()
        if records is None:
            records = []
        for path in self.find_manifests():
            relative = self.relative(path)
            content = self.read(path)
            try:
                doc, changes = self.plan(path, content)
            except ManifestParseError as e:
                self.log.warning("skipping %s: %s", relative, e.reason)
                continue
            if not changes:
                self.log.debug("%s already optimized", relative)
                continue
            if dry_run:
                outcome.dry_run_files.append(relative)
                continue
            backup_path = self.backup_manager.create_backup(path)
            record = BackupRecord(path, content)
            records.append(record)
            outcome.backups.append(record)
            outcome.backup_files.append(backup_path)
            self.write(path, doc)
            self.log.info("applied %d optimizations to %s", len(changes), relative)
            outcome.changes.extend(f"{relative}: {c}" for c in changes)
        return outcome

    def is_wasm_crate(self, path: Pathlike) -> bool:
        """manifest depends on wasm-bindgen or carries wasm-pack metadata"""
        path = Path(path)
        doc = self.parse(path, self.read(path))
        deps = doc.get("dependencies")
        if _is_table(deps) and "wasm-bindgen" in deps:
            return True
        package = doc.get("package")
        if _is_table(package):
            metadata = package.get("metadata")
            return _is_table(metadata) and "wasm-pack" in metadata
        return False


# ----------------------------------------------------------------------------
# secondary config (build-std)


class ToolchainDetector:
    """Detects whether the active rust toolchain is a nightly build"""

    def __init__(self, shell: Optional[ShellCmd] = None):
        self.shell = shell or ShellCmd()
        self.log = logging.getLogger(self.__class__.__name__)

    def rustc_version(self) -> Optional[str]:
        try:
            return self.shell.get(["rustc", "--version"], env=scrubbed_env())
        except CommandError as e:
            self.log.warning("could not query rustc version: %s", e)
            return None

    def is_nightly(self) -> bool:
        version = self.rustc_version()
        return bool(version and "nightly" in version)


class SecondaryConfigOptimizer:
    """Enables build-std and panic_immediate_abort in .cargo/config.toml.

    Unlike manifest edits, a structural mismatch here raises
    SecondaryConfigError and nothing is written.
    """

    def __init__(
        self,
        project_root: Pathlike,
        config: Optional[BuildStdConfig] = None,
        storage: Optional[Storage] = None,
        backup_manager: Optional[BackupManager] = None,
    ):
        self.project_root = Path(project_root)
        self.config = config or BuildStdConfig()
        self.storage = storage or Storage()
        self.backup_manager = backup_manager or BackupManager(
            self.project_root, self.storage
        )
        self.log = logging.getLogger(self.__class__.__name__)

    @property
    def config_path(self) -> Path:
        return self.project_root / SECONDARY_CONFIG

    def load(self) -> tuple[Optional[bytes], tomlkit.TOMLDocument]:
        """current bytes (None if absent) and parsed document"""
        path = self.config_path
        if not self.storage.exists(path):
            return None, tomlkit.document()
        try:
            content = self.storage.read_bytes(path)
        except OSError as e:
            raise SecondaryConfigError(path, f"unreadable: {e}") from e
        try:
            return content, tomlkit.parse(content.decode("utf-8"))
        except (TOMLKitError, UnicodeDecodeError) as e:
            raise SecondaryConfigError(path, f"parse error: {e}") from e

    def plan(self, doc: tomlkit.TOMLDocument) -> list[str]:
        """apply edits to doc in memory"""
        cfg = self.config
        path = self.config_path
        changes: list[str] = []

        unstable = _child_table(
            doc, "unstable", "unstable", SecondaryConfigError, path, False
        )
        if "build-std" not in unstable:
            unstable["build-std"] = _feature_list(cfg.std_components)
            changes.append(f"Set build-std = {cfg.std_components} (10-20% reduction)")
        if cfg.features and "build-std-features" not in unstable:
            unstable["build-std-features"] = _feature_list(cfg.features)
            changes.append(
                f"Set build-std-features = {cfg.features} (smaller panic handler)"
            )

        if cfg.target or cfg.rustflags:
            build = _child_table(
                doc, "build", "build", SecondaryConfigError, path, False
            )
            if cfg.target and "target" not in build:
                build["target"] = cfg.target
                changes.append(f'Set target = "{cfg.target}" (SSR support)')
            if cfg.rustflags and "rustflags" not in build:
                build["rustflags"] = _feature_list(cfg.rustflags)
                changes.append(f"Set rustflags = {cfg.rustflags} (SSR compatibility)")
        return changes

    def apply(
        self,
        dry_run: bool = False,
        records: Optional[list[BackupRecord]] = None,
    ) -> ManifestOutcome:
        """Apply build-std settings.

        Raises:
            SecondaryConfigError: the file cannot be parsed or has a bad shape
            ManifestIoError: backup or write failed
        """
        outcome = ManifestOutcome()
        if not self.config.enabled:
            return outcome
        if records is None:
            records = []
        path = self.config_path
        relative = SECONDARY_CONFIG.as_posix()

        original, doc = self.load()
        changes = self.plan(doc)
        if not changes:
            self.log.debug("%s already configured", relative)
            return outcome
        if dry_run:
            outcome.dry_run_files.append(relative)
            return outcome

        if original is not None:
            outcome.backup_files.append(self.backup_manager.create_backup(path))
        record = BackupRecord(path, original)
        records.append(record)
        outcome.backups.append(record)
        try:
            self.storage.makedirs(path.parent)
            self.storage.write_bytes(path, tomlkit.dumps(doc).encode("utf-8"))
        except OSError as e:
            raise ManifestIoError(path, str(e)) from e
        self.log.info("applied %d build-std settings to %s", len(changes), relative)
        outcome.changes.extend(f"{relative}: {c}" for c in changes)
        return outcome

    def is_configured(self) -> bool:
        """build-std already present in [unstable]"""
        _, doc = self.load()
        unstable = doc.get("unstable")
        return _is_table(unstable) and "build-std" in unstable


# ----------------------------------------------------------------------------
# toolchain


class ToolChain:
    """The external tools the pipeline depends on."""

    def __init__(self, shell: Optional[ShellCmd] = None):
        self.shell = shell or ShellCmd()
        self.cargo = Tool("Cargo", "cargo", required=True)
        self.wasm_bindgen = Tool("wasm-bindgen-cli", "wasm-bindgen", required=True)
        self.wasm_opt = Tool("wasm-opt (Binaryen)", "wasm-opt", required=False)
        self.wasm_snip = Tool("wasm-snip", "wasm-snip", required=False)
        self.log = logging.getLogger(self.__class__.__name__)

    @property
    def tools(self) -> list[Tool]:
        return [self.cargo, self.wasm_bindgen, self.wasm_opt, self.wasm_snip]

    def is_installed(self, tool: Tool) -> bool:
        return self.shell.which(tool.binary) is not None

    def version(self, tool: Tool) -> str:
        """first line of `<binary> --version`

        Raises:
            CommandError: if the version query fails
        """
        output = self.shell.get([tool.binary, tool.version_flag], env=scrubbed_env())
        return output.splitlines()[0] if output else ""

    def check_required(self) -> None:
        """Run every required tool with its version flag.

        Raises:
            ToolMissingError: on the first required tool that does not answer
        """
        for tool in self.tools:
            if not tool.required:
                continue
            try:
                version = self.version(tool)
            except CommandError as e:
                self.log.critical("%s missing: %s", tool.name, e)
                raise ToolMissingError(tool.name, tool.hint) from e
            self.log.debug("%s: %s", tool.name, version)

    def check_all(self) -> dict[str, Optional[str]]:
        """report {tool name: version or None} for every tool"""
        report: dict[str, Optional[str]] = {}
        for tool in self.tools:
            if not self.is_installed(tool):
                report[tool.name] = None
                level = logging.ERROR if tool.required else logging.WARNING
                self.log.log(level, "%s not found, install with: %s", tool.name, tool.hint)
                continue
            try:
                report[tool.name] = self.version(tool)
            except CommandError:
                report[tool.name] = "(version unknown)"
        return report


# ----------------------------------------------------------------------------
# tool runner


class ToolRunner:
    """Invokes each external stage with arguments derived from PipelineConfig."""

    def __init__(
        self,
        project_root: Pathlike,
        config: PipelineConfig,
        storage: Optional[Storage] = None,
        shell: Optional[ShellCmd] = None,
    ):
        self.project_root = Path(project_root)
        self.config = config
        self.storage = storage or Storage()
        self.shell = shell or ShellCmd()
        self.log = logging.getLogger(self.__class__.__name__)

    @property
    def target_dir(self) -> Path:
        return self.config.target_dir or self.project_root / "target"

    @property
    def build_dir(self) -> Path:
        """folder cargo writes the compiled artifact to"""
        return self.target_dir / self.config.target / self.config.profile_dir

    @property
    def bindgen_dir(self) -> Path:
        return self.project_root / "pkg"

    def run(self, stage: str, args: list[str]) -> None:
        try:
            self.shell.cmd(args, cwd=self.project_root, env=scrubbed_env())
        except CommandError as e:
            raise StageFailedError(stage, e.returncode) from e

    def find_artifact(self, stage: str, folder: Path) -> Path:
        """the single wasm file in folder; first of several, sorted"""
        try:
            matches = self.storage.glob(folder, f"*{WASM_SUFFIX}")
        except OSError as e:
            raise ArtifactNotFoundError(stage, folder) from e
        if not matches:
            raise ArtifactNotFoundError(stage, folder)
        if len(matches) > 1:
            self.log.warning(
                "Multiple %s files found in %s, using %s",
                WASM_SUFFIX,
                folder,
                matches[0].name,
            )
        return matches[0]

    def cargo_args(self) -> list[str]:
        args = ["cargo", "build"]
        if self.config.profile == "release":
            args.append("--release")
        else:
            args.extend(["--profile", self.config.profile])
        args.extend(["--target", self.config.target])
        if self.config.target_dir:
            args.extend(["--target-dir", str(self.config.target_dir)])
        return args

    def cargo_build(self) -> Path:
        """compile the crate and locate its wasm artifact"""
        self.run("cargo", self.cargo_args())
        return self.find_artifact("cargo", self.build_dir)

    def run_wasm_bindgen(self, wasm_file: Path) -> Path:
        """generate JS bindings, returning the processed wasm file"""
        args = [
            "wasm-bindgen",
            str(wasm_file),
            "--out-dir",
            str(self.bindgen_dir),
            "--target",
            self.config.bindgen_target,
        ]
        self.run("wasm-bindgen", args)
        return self.find_artifact("wasm-bindgen", self.bindgen_dir)

    def run_wasm_opt(self, wasm_file: Path) -> Path:
        """optimize in place"""
        args = [
            "wasm-opt",
            str(wasm_file),
            self.config.opt_level_arg,
            "-o",
            str(wasm_file),
        ] + WASM_OPT_FEATURE_FLAGS
        self.run("wasm-opt", args)
        return wasm_file

    def run_wasm_snip(self, wasm_file: Path) -> Path:
        """replace panicking code with unreachable, then swap the result in"""
        temp_file = wasm_file.with_suffix(wasm_file.suffix + ".tmp")
        args = [
            "wasm-snip",
            str(wasm_file),
            "-o",
            str(temp_file),
            "--snip-rust-panicking-code",
        ]
        self.run("wasm-snip", args)
        try:
            self.storage.replace(temp_file, wasm_file)
        except OSError as e:
            raise ArtifactNotFoundError("wasm-snip", temp_file.parent) from e
        return wasm_file


# ----------------------------------------------------------------------------
# telemetry


class BuildEvent(enum.Enum):
    BUILD_STARTED = "build_started"
    BUILD_COMPLETED = "build_completed"
    BUILD_FAILED = "build_failed"
    OPTIMIZATION_STARTED = "optimization_started"
    OPTIMIZATION_COMPLETED = "optimization_completed"


@dataclass
class MetricData:
    name: str
    value: float
    tags: dict[str, str] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class MetricsCollector:
    """Receives build events and measurements"""

    name = "base"

    def record_event(self, event: BuildEvent, metadata: Optional[dict[str, str]] = None) -> None:
        pass

    def record_metric(self, metric: MetricData) -> None:
        pass

    def record_duration(self, stage: str, seconds: float) -> None:
        self.record_metric(
            MetricData(f"{stage}_duration_ms", seconds * 1000.0, {"stage": stage})
        )

    def record_size(self, label: str, size_bytes: int) -> None:
        self.record_metric(
            MetricData(f"{label}_size_bytes", float(size_bytes), {"label": label})
        )


class NoOpCollector(MetricsCollector):
    name = "noop"


class LoggingCollector(MetricsCollector):
    """forwards telemetry to the log at DEBUG level"""

    name = "logging"

    def __init__(self) -> None:
        self.log = logging.getLogger(self.__class__.__name__)

    def record_event(self, event: BuildEvent, metadata: Optional[dict[str, str]] = None) -> None:
        self.log.debug("event: %s %s", event.value, metadata or "")

    def record_metric(self, metric: MetricData) -> None:
        self.log.debug("metric: %s = %s %s", metric.name, metric.value, metric.tags)


class MemoryCollector(MetricsCollector):
    """keeps everything in memory, for inspection in tests"""

    name = "memory"

    def __init__(self) -> None:
        self.events: list[tuple[BuildEvent, dict[str, str]]] = []
        self.metrics: list[MetricData] = []

    def record_event(self, event: BuildEvent, metadata: Optional[dict[str, str]] = None) -> None:
        self.events.append((event, dict(metadata or {})))

    def record_metric(self, metric: MetricData) -> None:
        self.metrics.append(metric)

    def metric(self, name: str) -> Optional[MetricData]:
        for m in reversed(self.metrics):
            if m.name == name:
                return m
        return None

    def clear(self) -> None:
        self.events.clear()
        self.metrics.clear()


# ----------------------------------------------------------------------------
# build orchestration


class BuildOrchestrator:
    """verify tools -> compile -> bindgen -> [wasm-opt] -> [wasm-snip]"""

    def __init__(
        self,
        project_root: Pathlike,
        config: Optional[PipelineConfig] = None,
        toolchain: Optional[ToolChain] = None,
        storage: Optional[Storage] = None,
        shell: Optional[ShellCmd] = None,
        collector: Optional[MetricsCollector] = None,
    ):
        self.project_root = Path(project_root)
        self.config = config or PipelineConfig()
        self.shell = shell or ShellCmd()
        self.storage = storage or Storage()
        self.toolchain = toolchain or ToolChain(self.shell)
        self.collector = collector or NoOpCollector()
        self.runner = ToolRunner(self.project_root, self.config, self.storage, self.shell)
        self.log = logging.getLogger(self.__class__.__name__)

    def measure(self, label: str, path: Path) -> int:
        size = self.storage.size(path)
        self.collector.record_size(label, size)
        self.log.info("%s: %s (%d bytes)", label, path.name, size)
        return size

    def optional_stage_enabled(self, enabled: bool, tool: Tool) -> bool:
        """stage runs if enabled and installed; strict_tools makes absence fatal"""
        if not enabled:
            return False
        if self.toolchain.is_installed(tool):
            return True
        if self.config.strict_tools:
            raise ToolMissingError(tool.name, tool.hint)
        self.log.warning("skipping %s (not installed)", tool.binary)
        return False

    def timed(self, stage: str, func: Any, *args: Any) -> Any:
        start = time.perf_counter()
        result = func(*args)
        self.collector.record_duration(stage, time.perf_counter() - start)
        return result

    def execute(self, check_tools: bool = True) -> SizeMetrics:
        """Run the pipeline and measure the artifacts.

        Args:
            check_tools: verify required tools first; callers that already
                did so pass False

        Returns:
            SizeMetrics with before = compiled artifact, after = final artifact

        Raises:
            ToolMissingError, StageFailedError, ArtifactNotFoundError: first
            failure, unchanged
        """
        self.collector.record_event(BuildEvent.BUILD_STARTED, {"target": self.config.target})
        try:
            metrics = self._execute(check_tools)
        except WasmSlimError as e:
            self.collector.record_event(BuildEvent.BUILD_FAILED, {"error": str(e)})
            raise
        self.collector.record_event(
            BuildEvent.BUILD_COMPLETED,
            {"before": str(metrics.before_bytes), "after": str(metrics.after_bytes)},
        )
        return metrics

    def _execute(self, check_tools: bool) -> SizeMetrics:
        if check_tools:
            self.toolchain.check_required()
        run_opt = self.optional_stage_enabled(
            self.config.run_wasm_opt, self.toolchain.wasm_opt
        )
        run_snip = self.optional_stage_enabled(
            self.config.run_wasm_snip, self.toolchain.wasm_snip
        )

        self.log.info("Step 1: building with cargo")
        wasm_file = self.timed("cargo", self.runner.cargo_build)
        before = self.measure("cargo", wasm_file)

        self.log.info("Step 2: running wasm-bindgen")
        artifact = self.timed("wasm-bindgen", self.runner.run_wasm_bindgen, wasm_file)
        after = self.measure("wasm-bindgen", artifact)

        if run_opt:
            self.log.info("Step 3: running wasm-opt %s", self.config.opt_level_arg)
            self.collector.record_event(BuildEvent.OPTIMIZATION_STARTED, {"stage": "wasm-opt"})
            artifact = self.timed("wasm-opt", self.runner.run_wasm_opt, artifact)
            after = self.measure("wasm-opt", artifact)
            self.collector.record_event(BuildEvent.OPTIMIZATION_COMPLETED, {"stage": "wasm-opt"})

        if run_snip:
            self.log.info("Step 4: running wasm-snip")
            self.collector.record_event(BuildEvent.OPTIMIZATION_STARTED, {"stage": "wasm-snip"})
            artifact = self.timed("wasm-snip", self.runner.run_wasm_snip, artifact)
            after = self.measure("wasm-snip", artifact)
            self.collector.record_event(BuildEvent.OPTIMIZATION_COMPLETED, {"stage": "wasm-snip"})

        metrics = SizeMetrics(before_bytes=before, after_bytes=after)
        self.log.info(
            "%d -> %d bytes (%.1f%% reduction)",
            metrics.before_bytes,
            metrics.after_bytes,
            metrics.reduction_percent,
        )
        return metrics


# ----------------------------------------------------------------------------
# workflow


class WorkflowState(enum.Enum):
    INIT = "init"
    MANIFEST_OPTIMIZED = "manifest_optimized"
    BUILD_EXECUTED = "build_executed"
    BUDGET_CHECKED = "budget_checked"
    DONE = "done"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


class BuildWorkflow:
    """Top-level coordinator: optimize manifests, build, roll back, check budget.

    Every collaborator is passed in explicitly; nothing is looked up from
    process-wide state. Concurrent runs against the same project root are not
    supported (manifests and the backup directory are shared).
    """

    def __init__(
        self,
        project_root: Pathlike,
        pipeline_config: Optional[PipelineConfig] = None,
        budget_config: Optional[BudgetConfig] = None,
        profile_config: Optional[ProfileConfig] = None,
        build_std_config: Optional[BuildStdConfig] = None,
        toolchain: Optional[ToolChain] = None,
        storage: Optional[Storage] = None,
        shell: Optional[ShellCmd] = None,
        collector: Optional[MetricsCollector] = None,
        detector: Optional[ToolchainDetector] = None,
    ):
        self.project_root = Path(project_root)
        self.pipeline_config = pipeline_config or PipelineConfig()
        self.budget_config = budget_config or BudgetConfig()
        self.profile_config = profile_config or ProfileConfig()
        self.build_std_config = build_std_config or BuildStdConfig()
        self.storage = storage or Storage()
        self.shell = shell or ShellCmd()
        self.toolchain = toolchain or ToolChain(self.shell)
        self.collector = collector or LoggingCollector()
        self.detector = detector or ToolchainDetector(self.shell)
        self.backup_manager = BackupManager(self.project_root, self.storage)
        self.state = WorkflowState.INIT
        self.rollback_failures: list[tuple[Path, str]] = []
        self.log = logging.getLogger(self.__class__.__name__)

    @classmethod
    def from_project(cls, project_root: Pathlike, **kwds: Any) -> "BuildWorkflow":
        """construct with settings read from .wasm-slim.toml"""
        cfg = load_config(project_root)
        return cls(
            project_root,
            pipeline_config=cfg.pipeline,
            budget_config=cfg.budget,
            profile_config=cfg.profile,
            **kwds,
        )

    def transition(self, state: WorkflowState) -> None:
        self.log.debug("%s -> %s", self.state.value, state.value)
        self.state = state

    def execute(
        self,
        dry_run: bool = False,
        check_budget: bool = False,
        target_dir: Optional[str] = None,
    ) -> BuildResult:
        """Run all phases.

        Args:
            dry_run: preview manifest edits without writing; the build still runs
            check_budget: enforce budget_config.max_size_kb on the final artifact
            target_dir: overrides the pipeline's cargo target directory

        Raises:
            WasmSlimError: the first failure, after restoring mutated files when
            it happened during the build
        """
        self.state = WorkflowState.INIT
        self.rollback_failures = []
        records: list[BackupRecord] = []

        config = self.pipeline_config
        if target_dir is not None:
            config = replace(config, target_dir=self.project_root / target_dir)

        try:
            self.toolchain.check_required()
            outcome = self.optimize_manifests(dry_run, records)
        except WasmSlimError:
            if records:
                self.rollback(records)
            self.transition(WorkflowState.FAILED)
            raise
        self.transition(WorkflowState.MANIFEST_OPTIMIZED)

        orchestrator = BuildOrchestrator(
            self.project_root,
            config,
            toolchain=self.toolchain,
            storage=self.storage,
            shell=self.shell,
            collector=self.collector,
        )
        try:
            metrics = orchestrator.execute(check_tools=False)
        except WasmSlimError:
            if not dry_run and records:
                self.rollback(records)
                self.transition(WorkflowState.ROLLED_BACK)
            self.transition(WorkflowState.FAILED)
            raise
        self.transition(WorkflowState.BUILD_EXECUTED)

        passed, threshold = None, None
        if check_budget:
            try:
                passed, threshold = self.check_budget(metrics)
            except BudgetExceededError:
                self.transition(WorkflowState.FAILED)
                raise
        self.transition(WorkflowState.BUDGET_CHECKED)

        result = BuildResult(
            changes=outcome.changes,
            metrics=metrics,
            budget_check_passed=passed,
            budget_threshold=threshold,
            dry_run=dry_run,
            dry_run_files=outcome.dry_run_files,
            backup_files=outcome.backup_files,
        )
        self.transition(WorkflowState.DONE)
        return result

    def optimize_manifests(
        self, dry_run: bool, records: list[BackupRecord]
    ) -> ManifestOutcome:
        """Phase 1: Cargo.toml edits, then build-std on nightly"""
        manifests = ManifestOptimizer(
            self.project_root,
            self.profile_config,
            storage=self.storage,
            backup_manager=self.backup_manager,
        )
        outcome = manifests.optimize(dry_run, records)

        if self.build_std_config.enabled and self.detector.is_nightly():
            secondary = SecondaryConfigOptimizer(
                self.project_root,
                self.build_std_config,
                storage=self.storage,
                backup_manager=self.backup_manager,
            )
            extra = secondary.apply(dry_run, records)
            outcome.changes.extend(extra.changes)
            outcome.dry_run_files.extend(extra.dry_run_files)
            outcome.backups.extend(extra.backups)
            outcome.backup_files.extend(extra.backup_files)
        return outcome

    def rollback(self, records: list[BackupRecord]) -> None:
        """Restore every recorded file; one failure does not stop the rest."""
        self.log.warning("build failed, restoring %d file(s)", len(records))
        for record in records:
            try:
                if record.original_bytes is None:
                    if self.storage.exists(record.path):
                        self.storage.remove(record.path)
                else:
                    self.storage.write_bytes(record.path, record.original_bytes)
                self.log.info("restored %s", record.path)
            except OSError as e:
                self.log.error("could not restore %s: %s", record.path, e)
                self.rollback_failures.append((record.path, str(e)))

    def check_budget(self, metrics: SizeMetrics) -> tuple[Optional[bool], Optional[int]]:
        """Phase 3: compare the final artifact with max_size_kb.

        Returns:
            (None, None) without a threshold, else (True, max bytes)

        Raises:
            BudgetExceededError: the artifact is larger than the maximum
        """
        max_bytes = self.budget_config.max_bytes
        if max_bytes is None:
            self.log.debug("no size budget configured")
            return None, None
        if metrics.after_bytes > max_bytes:
            error = BudgetExceededError(metrics.after_bytes, max_bytes)
            self.log.error("%s", error)
            raise error
        self.log.info("size within budget (%d <= %d bytes)", metrics.after_bytes, max_bytes)
        return True, max_bytes
