#!/usr/bin/env python3
"""ipa2sim - install iOS app archives into a booted simulator.

This module provides tools for:
1. Extracting an .ipa archive and locating the .app bundle in its Payload
2. Converting the bundle for the simulator with `simforge convert`
3. Ad-hoc re-signing the bundle and every embedded framework
4. Installing the result into the currently booted simulator

Frameworks are signed concurrently, one codesign process per directory
found under the bundle's Frameworks folder. Everything else runs as a
strict sequence of stages which halts at the first failing stage.

Usage (CLI):
    # Convert, sign and install an archive
    ipa2sim run ~/Downloads/MyApp.ipa

    # Check whether a simulator is booted
    ipa2sim status

Usage (API):
    from ipa2sim import Pipeline, Settings

    pipeline = Pipeline("MyApp.ipa", settings=Settings())
    for entry in pipeline.events:
        print(entry)

    # Run in the background and wait for it
    completed = pipeline.start().result()
"""

import argparse
import datetime
import logging
import os
import shutil
import subprocess
import sys
import threading
import tomllib
from concurrent.futures import Future
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from dotenv import load_dotenv

# ----------------------------------------------------------------------------
# Constants

__version__ = "0.1.0"

# Type aliases
Pathlike = Path | str

# Archive and bundle layout
PAYLOAD_DIR = "Payload"
FRAMEWORKS_DIR = "Frameworks"
BUNDLE_EXT = ".app"

# Substring of `simctl list devices booted` output marking a running device
BOOTED_MARKER = "Booted"

# Name of the scratch directory an archive is extracted into
WORKING_DIR_NAME = "ipa_extracted"

# Default tool locations
DEFAULT_UNZIP = "/usr/bin/unzip"
DEFAULT_CONVERTER = "/usr/local/bin/simforge"
DEFAULT_CODESIGN = "/usr/bin/codesign"
DEFAULT_XCRUN = "/usr/bin/xcrun"

# Force, ad-hoc identity. No --deep: frameworks are signed one by one.
ADHOC_SIGN_ARGS = ["-f", "-s", "-"]

# Environment variable names
ENV_WORKING_DIR = "IPA2SIM_WORKING_DIR"
ENV_UNZIP = "IPA2SIM_UNZIP"
ENV_CONVERTER = "IPA2SIM_CONVERTER"
ENV_CODESIGN = "IPA2SIM_CODESIGN"
ENV_XCRUN = "IPA2SIM_XCRUN"

load_dotenv()

# ----------------------------------------------------------------------------
# Error handling


class Ipa2SimError(Exception):
    """Base exception class for ipa2sim errors."""


class ConfigurationError(Ipa2SimError):
    """Exception raised when configuration is invalid."""


class BundleLocateError(Ipa2SimError):
    """Exception raised when the .app bundle cannot be located."""


class PayloadMissingError(BundleLocateError):
    """Exception raised when the Payload directory is missing or unreadable."""


class BundleNotFoundError(BundleLocateError):
    """Exception raised when Payload holds no .app bundle."""


class PipelineStateError(Ipa2SimError):
    """Exception raised when pipeline state is used out of order."""


# ----------------------------------------------------------------------------
# Configuration file support


def load_config(config_path: Path | None = None) -> dict[str, object]:
    """Load configuration from a TOML file.

    Searches for configuration in the following order:
    1. Explicit config_path if provided
    2. .ipa2sim.toml in current directory
    3. ipa2sim.toml in current directory

    Args:
        config_path: Optional explicit path to config file

    Returns:
        Configuration dictionary (empty if no config found)

    Raises:
        ConfigurationError: If an explicit config file is missing, or a
            config file cannot be read or parsed

    Example .ipa2sim.toml:
        [pipeline]
        working_dir = "~/Documents/ipa_extracted"

        [tools]
        converter = "/opt/homebrew/bin/simforge"
    """
    if config_path is not None:
        if not config_path.exists():
            raise ConfigurationError(f"Config file not found: {config_path}")
        paths_to_try = [config_path]
    else:
        cwd = Path.cwd()
        paths_to_try = [
            cwd / ".ipa2sim.toml",
            cwd / "ipa2sim.toml",
        ]

    for path in paths_to_try:
        if path.exists():
            try:
                with open(path, "rb") as f:
                    data: dict[str, object] = tomllib.load(f)
            except (OSError, tomllib.TOMLDecodeError) as e:
                raise ConfigurationError(
                    f"Cannot load config file {path}: {e}"
                ) from e
            return data

    return {}


def get_config_value(
    config: dict[str, object],
    section: str,
    key: str,
    default: str | None = None,
) -> str | None:
    """Get a value from config with section.key lookup.

    Args:
        config: Configuration dictionary
        section: Section name (e.g., "pipeline", "tools")
        key: Key name within section
        default: Default value if not found

    Returns:
        Configuration value or default
    """
    section_config = config.get(section, {})
    if not isinstance(section_config, dict):
        return default
    value = section_config.get(key, default)
    if value is None or isinstance(value, str):
        return value
    return default


def default_working_dir() -> Path:
    """Return the default scratch directory for extracted archives."""
    return Path.home() / "Documents" / WORKING_DIR_NAME


@dataclass
class Settings:
    """Resolved tool locations and working directory for a pipeline run."""

    working_dir: Path = field(default_factory=default_working_dir)
    unzip: str = DEFAULT_UNZIP
    converter: str = DEFAULT_CONVERTER
    codesign: str = DEFAULT_CODESIGN
    xcrun: str = DEFAULT_XCRUN

    def __post_init__(self) -> None:
        self.working_dir = Path(self.working_dir).expanduser()

    @classmethod
    def resolve(
        cls,
        config: dict[str, object] | None = None,
        working_dir: Pathlike | None = None,
        unzip: str | None = None,
        converter: str | None = None,
        codesign: str | None = None,
        xcrun: str | None = None,
    ) -> "Settings":
        """Build settings from explicit values, environment and config.

        Each setting is taken from the first source that provides it:
        the explicit argument, its environment variable, the config
        file, then the built-in default.
        """
        config = config or {}

        def pick(
            value: Pathlike | None, env: str, section: str, key: str, default: str
        ) -> str:
            if value is not None:
                return str(value)
            env_value = os.getenv(env)
            if env_value:
                return env_value
            return get_config_value(config, section, key, default) or default

        return cls(
            working_dir=Path(
                pick(
                    working_dir,
                    ENV_WORKING_DIR,
                    "pipeline",
                    "working_dir",
                    str(default_working_dir()),
                )
            ),
            unzip=pick(unzip, ENV_UNZIP, "tools", "unzip", DEFAULT_UNZIP),
            converter=pick(
                converter, ENV_CONVERTER, "tools", "converter", DEFAULT_CONVERTER
            ),
            codesign=pick(
                codesign, ENV_CODESIGN, "tools", "codesign", DEFAULT_CODESIGN
            ),
            xcrun=pick(xcrun, ENV_XCRUN, "tools", "xcrun", DEFAULT_XCRUN),
        )


# ----------------------------------------------------------------------------
# Logging configuration


class CustomFormatter(logging.Formatter):
    """Custom logging formatting class with color support."""

    class color:
        """Text colors for terminal output."""

        grey = "\x1b[38;20m"
        green = "\x1b[32;20m"
        yellow = "\x1b[33;20m"
        red = "\x1b[31;20m"
        bold_red = "\x1b[31;1m"
        reset = "\x1b[0m"

    def __init__(self, use_color: bool = True, verbose: bool = False):
        super().__init__()
        self.use_color = use_color
        if verbose:
            self.fmt = "%(clock)s {}%(levelname)s{} %(name)s.%(funcName)s - {}%(message)s{}"
        else:
            self.fmt = "%(clock)s {}%(message)s{}"
        c = self.color
        self.FORMATS = {
            logging.DEBUG: self._colored(c.grey),
            logging.INFO: self._colored(c.green),
            logging.WARNING: self._colored(c.yellow),
            logging.ERROR: self._colored(c.red),
            logging.CRITICAL: self._colored(c.bold_red),
        }

    def _colored(self, level_color: str) -> str:
        slots = self.fmt.count("{}") // 2
        colors = [level_color, self.color.reset] * slots
        return self.fmt.format(*colors)

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with color if enabled."""
        if not self.use_color:
            log_fmt = self.fmt.replace("{}", "")
        else:
            log_fmt = self.FORMATS.get(record.levelno, self.fmt.replace("{}", ""))
        record.clock = datetime.datetime.fromtimestamp(record.created).strftime(
            "%H:%M:%S"
        )
        formatter = logging.Formatter(log_fmt)
        return formatter.format(record)


def setup_logging(debug: bool = False, use_color: bool = True) -> None:
    """Configure logging for the application.

    Args:
        debug: Whether to enable debug logging
        use_color: Whether to use colored output
    """
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(CustomFormatter(use_color, verbose=debug))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        handlers=[stream_handler],
        force=True,
    )


# ----------------------------------------------------------------------------
# Event log


@dataclass(frozen=True)
class LogEntry:
    """A single timestamped, human-readable pipeline message."""

    timestamp: datetime.datetime
    message: str
    level: int = logging.INFO

    def __str__(self) -> str:
        return f"{self.timestamp:%H:%M:%S} {self.message}"


class EventLog:
    """Append-only record of pipeline events.

    Every entry is also forwarded to the ``ipa2sim`` logger, and handed to
    each subscriber in emission order. The pipeline only ever writes to the
    log; observers such as a CLI or GUI read from it.

    Example:
        events = EventLog()
        events.subscribe(lambda entry: print(entry))
        events.emit("Processing started")
    """

    def __init__(self, logger: logging.Logger | None = None):
        self.log = logger or logging.getLogger("ipa2sim")
        self._entries: list[LogEntry] = []
        self._subscribers: list[Callable[[LogEntry], None]] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable[[LogEntry], None]) -> None:
        """Register a callback invoked with every new entry."""
        with self._lock:
            self._subscribers.append(callback)

    def emit(self, message: str, level: int = logging.INFO) -> LogEntry:
        """Append a message to the log and notify subscribers."""
        entry = LogEntry(datetime.datetime.now(), message, level)
        with self._lock:
            self._entries.append(entry)
            subscribers = list(self._subscribers)
        self.log.log(level, "%s", message, stacklevel=2)
        for callback in subscribers:
            callback(entry)
        return entry

    @property
    def entries(self) -> tuple[LogEntry, ...]:
        with self._lock:
            return tuple(self._entries)

    @property
    def messages(self) -> list[str]:
        return [entry.message for entry in self.entries]

    def __iter__(self):
        return iter(self.entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# ----------------------------------------------------------------------------
# Command execution utilities


@dataclass(frozen=True)
class StageOutcome:
    """Result of a single external process invocation.

    A process that could not be started at all carries the launch error
    in ``error`` and no return code.
    """

    command: list[str]
    returncode: int | None = None
    stdout: str = ""
    stderr: str = ""
    error: str | None = None

    @property
    def launched(self) -> bool:
        return self.error is None

    @property
    def ok(self) -> bool:
        return self.launched and self.returncode == 0

    @property
    def command_str(self) -> str:
        return " ".join(self.command)

    def describe(self) -> str:
        """Short human-readable description of a failed outcome."""
        if not self.launched:
            return f"could not be launched: {self.error}"
        return f"exit code: {self.returncode}"


class ProcessRunner:
    """Run external tools as child processes.

    Two modes are provided:
    - start(): launch and return immediately; completion is delivered
      through a Future (and an optional continuation) once the child exits
    - run(): block until the child exits and capture its stdout

    Commands are always executed with shell=False. A process that cannot be
    launched yields an outcome with ``launched == False`` rather than an
    exception. Output is decoded with errors="replace", since tools such as
    unzip echo archive member names in arbitrary encodings.
    """

    def __init__(self, log: logging.Logger | None = None):
        self.log = log or logging.getLogger(self.__class__.__name__)

    def start(
        self,
        command: list[str],
        on_exit: Callable[[StageOutcome], None] | None = None,
    ) -> "Future[StageOutcome]":
        """Launch a command without waiting for it to finish.

        Args:
            command: The command as a list of arguments
            on_exit: Optional continuation called with the outcome once the
                process has terminated (or failed to launch)

        Returns:
            A future resolved with the StageOutcome
        """
        future: Future[StageOutcome] = Future()
        if on_exit is not None:
            future.add_done_callback(lambda f: on_exit(f.result()))

        self.log.debug("%s", " ".join(command))
        try:
            proc = subprocess.Popen(
                command,
                shell=False,
                text=True,
                errors="replace",
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            self.log.debug("launch failed: %s", e)
            future.set_result(StageOutcome(command, error=str(e)))
            return future

        watcher = threading.Thread(
            target=self._wait,
            args=(proc, command, future),
            name=f"wait-{proc.pid}",
            daemon=True,
        )
        watcher.start()
        return future

    def _wait(
        self,
        proc: subprocess.Popen,
        command: list[str],
        future: "Future[StageOutcome]",
    ) -> None:
        """Watcher thread: wait for the child and resolve its future.

        The future is resolved even if reading the child's output fails;
        the child is then killed and reported as a failed outcome.
        """
        try:
            stdout, stderr = proc.communicate()
        except Exception as e:
            self.log.error("reading output of %s failed: %s", command[0], e)
            proc.kill()
            proc.wait()
            returncode = proc.returncode if proc.returncode else 1
            future.set_result(StageOutcome(command, returncode, stderr=str(e)))
            return
        outcome = StageOutcome(command, proc.returncode, stdout or "", stderr or "")
        if not outcome.ok and outcome.stderr:
            self.log.debug("%s: %s", command[0], outcome.stderr.strip())
        future.set_result(outcome)

    def run(self, command: list[str]) -> StageOutcome:
        """Run a command to completion and capture its output.

        Args:
            command: The command as a list of arguments

        Returns:
            The StageOutcome, with stdout captured as text
        """
        self.log.debug("%s", " ".join(command))
        try:
            result = subprocess.run(
                command,
                shell=False,
                text=True,
                errors="replace",
                capture_output=True,
            )
        except OSError as e:
            self.log.debug("launch failed: %s", e)
            return StageOutcome(command, error=str(e))
        return StageOutcome(command, result.returncode, result.stdout, result.stderr)


class JoinBarrier:
    """Counting rendezvous for a set of concurrent tasks.

    Call enter() before launching each task and leave() when it finishes;
    wait() returns once every entered task has left. Failed outcomes are
    collected under the same lock.
    """

    def __init__(self) -> None:
        self._pending = 0
        self._failures: list[StageOutcome] = []
        self._cond = threading.Condition()

    def enter(self) -> None:
        with self._cond:
            self._pending += 1

    def leave(self, outcome: StageOutcome) -> None:
        with self._cond:
            if self._pending == 0:
                raise PipelineStateError("leave() called without matching enter()")
            if not outcome.ok:
                self._failures.append(outcome)
            self._pending -= 1
            if self._pending == 0:
                self._cond.notify_all()

    def wait(self) -> list[StageOutcome]:
        """Block until all tasks have left; return the failed outcomes."""
        with self._cond:
            self._cond.wait_for(lambda: self._pending == 0)
            return list(self._failures)

    @property
    def pending(self) -> int:
        with self._cond:
            return self._pending


# ----------------------------------------------------------------------------
# Bundle location


def locate_bundle(extraction_root: Pathlike) -> Path:
    """Find the .app bundle inside an extracted archive.

    Returns the first entry of ``<extraction_root>/Payload`` whose name ends
    in ``.app``. When several match, directory-listing order decides, which
    depends on the platform and filesystem.

    Args:
        extraction_root: Directory the archive was extracted into

    Returns:
        Path to the .app bundle

    Raises:
        PayloadMissingError: If the Payload directory cannot be listed
        BundleNotFoundError: If Payload holds no .app entry
    """
    payload = Path(extraction_root) / PAYLOAD_DIR
    try:
        with os.scandir(payload) as it:
            names = [entry.name for entry in it]
    except OSError as e:
        raise PayloadMissingError(
            f"Payload directory missing or unreadable: {payload} ({e})"
        ) from e

    for name in names:
        if name.endswith(BUNDLE_EXT) and name != BUNDLE_EXT:
            return payload / name

    raise BundleNotFoundError(f"No {BUNDLE_EXT} bundle found in {payload}")


# ----------------------------------------------------------------------------
# Codesigning


@dataclass
class SigningResult:
    """Aggregate result of signing every framework directory.

    Directories that could not be listed are kept in ``unreadable``; their
    contents were never enumerated, so they count as a failure.
    """

    jobs: list[Path] = field(default_factory=list)
    failures: list[StageOutcome] = field(default_factory=list)
    unreadable: list[Path] = field(default_factory=list)
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return not self.failures and not self.unreadable


def adhoc_sign_command(codesign: str, path: Pathlike) -> list[str]:
    """Build the ad-hoc codesign command for a bundle or directory."""
    return [codesign, *ADHOC_SIGN_ARGS, str(path)]


class FrameworkSigner:
    """Concurrently ad-hoc sign every directory under a bundle's Frameworks.

    Every directory found at any depth below ``<bundle>/Frameworks`` is a
    signing job. All jobs are launched at once and joined before process()
    returns. A bundle without a Frameworks directory has nothing to sign.

    Args:
        bundle: Path to the .app bundle
        runner: ProcessRunner used to launch codesign
        codesign: Path to the codesign executable
        events: Optional EventLog for per-job failure messages

    Example:
        signer = FrameworkSigner("Payload/MyApp.app", ProcessRunner())
        result = signer.process()
    """

    def __init__(
        self,
        bundle: Pathlike,
        runner: ProcessRunner,
        codesign: str = DEFAULT_CODESIGN,
        events: EventLog | None = None,
    ):
        self.bundle = Path(bundle)
        self.runner = runner
        self.codesign = codesign
        self.events = events or EventLog()
        self.log = logging.getLogger(self.__class__.__name__)

    @property
    def frameworks_dir(self) -> Path:
        return self.bundle / FRAMEWORKS_DIR

    def collect(self, unreadable: list[Path] | None = None) -> list[Path]:
        """Walk Frameworks and return every directory found, at any depth.

        Symbolic links to directories are signing jobs too, but the walk does
        not descend into them. Directories that cannot be listed are reported
        and appended to ``unreadable``.
        """

        def on_error(e: OSError) -> None:
            path = Path(e.filename) if e.filename else self.frameworks_dir
            self.events.emit(f"Cannot list {path}: {e.strerror}", logging.WARNING)
            if unreadable is not None:
                unreadable.append(path)

        jobs = []
        for root, folders, _files in os.walk(self.frameworks_dir, onerror=on_error):
            root_path = Path(root)
            for folder in folders:
                fpath = root_path / folder
                self.log.debug("added framework dir: %s", fpath)
                jobs.append(fpath)
        return jobs

    def process(self) -> SigningResult:
        """Sign all framework directories and join on the results."""
        if not self.frameworks_dir.is_dir():
            self.events.emit("No Frameworks directory, nothing to sign.")
            return SigningResult(skipped=True)

        unreadable: list[Path] = []
        jobs = self.collect(unreadable)
        barrier = JoinBarrier()
        for path in jobs:
            barrier.enter()
            self.runner.start(
                adhoc_sign_command(self.codesign, path), on_exit=barrier.leave
            )
        failures = barrier.wait()

        for outcome in failures:
            self.events.emit(
                f"Signing {outcome.command[-1]} failed, {outcome.describe()}",
                logging.WARNING,
            )
        return SigningResult(jobs=jobs, failures=failures, unreadable=unreadable)


# ----------------------------------------------------------------------------
# Simulator installation


class SimulatorInstaller:
    """Install a bundle into the currently booted simulator.

    Whether a simulator is running is decided by looking for the "Booted"
    marker in the output of ``xcrun simctl list devices booted``. This is a
    plain substring match on human-oriented output.

    Args:
        runner: ProcessRunner used to call xcrun
        xcrun: Path to the xcrun executable
        events: Optional EventLog for progress messages
    """

    def __init__(
        self,
        runner: ProcessRunner,
        xcrun: str = DEFAULT_XCRUN,
        events: EventLog | None = None,
    ):
        self.runner = runner
        self.xcrun = xcrun
        self.events = events or EventLog()
        self.log = logging.getLogger(self.__class__.__name__)

    def query(self) -> StageOutcome:
        """Run the booted-devices query and capture its output."""
        return self.runner.run([self.xcrun, "simctl", "list", "devices", "booted"])

    def is_booted(self) -> bool:
        """Return True if a booted simulator is listed."""
        outcome = self.query()
        if not outcome.launched:
            self.events.emit(
                f"Failed to query simulator status: {outcome.error}",
                logging.ERROR,
            )
            return False
        return BOOTED_MARKER in outcome.stdout

    def install(self, bundle: Pathlike) -> bool:
        """Install the bundle if a simulator is booted.

        Returns:
            False if the status query or the install failed. True otherwise,
            including when no simulator is booted.
        """
        status = self.query()
        if not status.launched:
            self.events.emit(
                f"Failed to query simulator status: {status.error}",
                logging.ERROR,
            )
            return False
        self.log.debug("simctl list exited with %s", status.returncode)

        if BOOTED_MARKER not in status.stdout:
            self.events.emit("Simulator not booted. Finishing.")
            return True

        command = [self.xcrun, "simctl", "install", "booted", str(bundle)]
        outcome = self.runner.start(command).result()
        if outcome.ok:
            self.events.emit("Installed on the simulator.")
            return True
        if not outcome.launched:
            self.events.emit(
                f"Failed to launch simulator install: {outcome.error}",
                logging.ERROR,
            )
        else:
            self.events.emit(
                f"Simulator install failed. Exit code: {outcome.returncode}",
                logging.ERROR,
            )
        return False


# ----------------------------------------------------------------------------
# Pipeline


class PipelineContext:
    """State carried from stage to stage during a single run."""

    def __init__(self, source_archive: Pathlike, working_dir: Pathlike):
        self._source_archive = Path(source_archive).absolute()
        self.working_dir = Path(working_dir)
        self._bundle_path: Path | None = None
        self.relocated_path: Path | None = None

    @property
    def source_archive(self) -> Path:
        return self._source_archive

    @property
    def destination_dir(self) -> Path:
        return self._source_archive.parent

    @property
    def bundle_path(self) -> Path | None:
        return self._bundle_path

    @bundle_path.setter
    def bundle_path(self, path: Path) -> None:
        if self._bundle_path is not None:
            raise PipelineStateError(
                f"Bundle already located: {self._bundle_path}"
            )
        self._bundle_path = Path(path)


# Only one archive is processed at a time.
_RUN_LOCK = threading.Lock()


class Pipeline:
    """Extract, convert, sign, relocate and install one .ipa archive.

    Stages run strictly in order:
    1. extract          unzip the archive into the working directory
    2. convert          locate the .app and run `simforge convert` on it
    3. sign_bundle      ad-hoc sign the .app itself
    4. sign_frameworks  ad-hoc sign every framework directory, concurrently
    5. relocate         move the .app next to the archive, drop working dir
    6. install          install into the booted simulator, if any

    Each stage returns True to advance or False to halt. A failing stage
    halts the run and leaves everything produced so far in place, except
    sign_frameworks, whose failures are reported but never halt.

    Args:
        archive: Path to the .ipa file
        settings: Tool locations and working directory
        runner: ProcessRunner used for every external tool
        events: EventLog receiving all progress messages

    Example:
        pipeline = Pipeline("MyApp.ipa")
        if not pipeline.run():
            print(pipeline.events.messages[-1])
    """

    def __init__(
        self,
        archive: Pathlike,
        settings: Settings | None = None,
        runner: ProcessRunner | None = None,
        events: EventLog | None = None,
    ):
        self.settings = settings or Settings()
        self.runner = runner or ProcessRunner()
        self.events = events or EventLog()
        self.context = PipelineContext(archive, self.settings.working_dir)
        self.log = logging.getLogger(self.__class__.__name__)

    def stages(self) -> list[tuple[str, Callable[[], bool]]]:
        return [
            ("extract", self.extract),
            ("convert", self.convert),
            ("sign_bundle", self.sign_bundle),
            ("sign_frameworks", self.sign_frameworks),
            ("relocate", self.relocate),
            ("install", self.install),
        ]

    def run(self) -> bool:
        """Run every stage in order on the calling thread.

        Returns:
            True if every stage advanced, False if the run halted
        """
        if not _RUN_LOCK.acquire(blocking=False):
            self.events.emit(
                "Another archive is being processed. Try again when it is done.",
                logging.ERROR,
            )
            return False
        try:
            self.events.emit(f"Processing {self.context.source_archive.name}...")
            for name, stage in self.stages():
                self.log.debug("stage: %s", name)
                if not stage():
                    self.log.debug("halted at stage: %s", name)
                    return False
            return True
        finally:
            _RUN_LOCK.release()

    def start(self) -> "Future[bool]":
        """Run the pipeline on a background thread."""
        future: Future[bool] = Future()

        def target() -> None:
            try:
                future.set_result(self.run())
            except Exception as e:
                future.set_exception(e)

        threading.Thread(target=target, name="ipa2sim-pipeline", daemon=True).start()
        return future

    def _fail(self, stage: str, outcome: StageOutcome) -> bool:
        """Report a failed external process and halt."""
        if not outcome.launched:
            self.events.emit(
                f"{stage} could not be launched: {outcome.error}", logging.ERROR
            )
        else:
            self.events.emit(
                f"{stage} failed. Exit code: {outcome.returncode}", logging.ERROR
            )
        return False

    def _remove_working_dir(self) -> None:
        wd = self.context.working_dir
        if wd.is_dir() and not wd.is_symlink():
            shutil.rmtree(wd)
        elif wd.exists() or wd.is_symlink():
            wd.unlink()

    def extract(self) -> bool:
        """Unzip the archive into a freshly emptied working directory."""
        ctx = self.context
        try:
            self._remove_working_dir()
        except OSError as e:
            self.events.emit(
                f"Cannot clear working directory {ctx.working_dir}: {e}",
                logging.ERROR,
            )
            return False

        outcome = self.runner.start(
            [self.settings.unzip, str(ctx.source_archive), "-d", str(ctx.working_dir)]
        ).result()
        if not outcome.ok:
            return self._fail("Extraction", outcome)
        self.events.emit(
            f"Archive extracted. Searching {PAYLOAD_DIR} for a {BUNDLE_EXT} bundle."
        )
        return True

    def convert(self) -> bool:
        """Locate the .app bundle and run the converter on it."""
        ctx = self.context
        try:
            ctx.bundle_path = locate_bundle(ctx.working_dir)
        except PayloadMissingError as e:
            self.events.emit(f"Failed to read {PAYLOAD_DIR}: {e}", logging.ERROR)
            return False
        except BundleNotFoundError:
            self.events.emit(
                f"No {BUNDLE_EXT} bundle found in {PAYLOAD_DIR}.", logging.ERROR
            )
            return False
        self.events.emit(f"Found {ctx.bundle_path.name}.")

        converter = Path(self.settings.converter)
        if not converter.exists():
            self.events.emit(
                f"{converter.name} not found at {converter}. "
                "Check that it is installed there.",
                logging.ERROR,
            )
            return False

        outcome = self.runner.start(
            [str(converter), "convert", str(ctx.bundle_path)]
        ).result()
        if not outcome.ok:
            return self._fail(f"{converter.name} convert", outcome)
        self.events.emit(f"{converter.name} convert done. Starting code signing.")
        return True

    def sign_bundle(self) -> bool:
        """Ad-hoc sign the main bundle, without --deep."""
        outcome = self.runner.start(
            adhoc_sign_command(self.settings.codesign, self.context.bundle_path)
        ).result()
        if not outcome.ok:
            return self._fail("App bundle signing", outcome)
        self.events.emit("App bundle signed.")
        return True

    def sign_frameworks(self) -> bool:
        """Sign embedded frameworks. Never halts the pipeline."""
        signer = FrameworkSigner(
            self.context.bundle_path,
            self.runner,
            codesign=self.settings.codesign,
            events=self.events,
        )
        result = signer.process()
        if result.skipped:
            return True
        if result.ok:
            self.events.emit(f"Frameworks signed ({len(result.jobs)} directories).")
        else:
            self.events.emit(
                f"Errors while signing Frameworks "
                f"({len(result.failures)} of {len(result.jobs)} failed, "
                f"{len(result.unreadable)} unreadable).",
                logging.WARNING,
            )
        return True

    def relocate(self) -> bool:
        """Move the signed bundle next to the archive, then drop the working dir."""
        ctx = self.context
        destination = ctx.destination_dir / ctx.bundle_path.name
        try:
            if destination.is_dir() and not destination.is_symlink():
                shutil.rmtree(destination)
            elif destination.exists() or destination.is_symlink():
                destination.unlink()
            shutil.move(str(ctx.bundle_path), str(destination))
        except OSError as e:
            self.events.emit(f"Failed to place the app: {e}", logging.ERROR)
            return False
        ctx.relocated_path = destination
        self.events.emit(
            f"Signed app placed at {destination}. Trying to install on the simulator."
        )

        try:
            self._remove_working_dir()
        except OSError as e:
            self.events.emit(
                f"Could not remove working directory {ctx.working_dir}: {e}",
                logging.WARNING,
            )
        return True

    def install(self) -> bool:
        """Install the relocated bundle into the booted simulator."""
        installer = SimulatorInstaller(
            self.runner, xcrun=self.settings.xcrun, events=self.events
        )
        return installer.install(self.context.relocated_path)


# ----------------------------------------------------------------------------
# Command-line interface


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    """Add common options to a parser."""
    parser.add_argument(
        "--config",
        metavar="FILE",
        help="path to a TOML config file (default: .ipa2sim.toml or ipa2sim.toml)",
    )
    parser.add_argument(
        "--xcrun",
        metavar="PATH",
        help=f"path to xcrun (default: {DEFAULT_XCRUN})",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="enable verbose/debug logging",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="disable colored output",
    )


def _load_settings(args: argparse.Namespace) -> Settings:
    config = load_config(Path(args.config) if args.config else None)
    return Settings.resolve(
        config,
        working_dir=getattr(args, "working_dir", None),
        unzip=getattr(args, "unzip", None),
        converter=getattr(args, "converter", None),
        codesign=getattr(args, "codesign", None),
        xcrun=args.xcrun,
    )


def _cmd_run(args: argparse.Namespace) -> None:
    """Handle 'run' subcommand."""
    setup_logging(args.verbose, not args.no_color)
    log = logging.getLogger("ipa2sim")

    archive = Path(args.archive)
    if not archive.is_file():
        log.error("Archive does not exist: %s", archive)
        sys.exit(1)

    settings = _load_settings(args)
    log.debug("settings: %s", settings)

    pipeline = Pipeline(archive, settings=settings)
    if not pipeline.start().result():
        sys.exit(1)


def _cmd_status(args: argparse.Namespace) -> None:
    """Handle 'status' subcommand."""
    setup_logging(args.verbose, not args.no_color)
    log = logging.getLogger("ipa2sim")

    settings = _load_settings(args)
    installer = SimulatorInstaller(ProcessRunner(), xcrun=settings.xcrun)
    if installer.is_booted():
        log.info("Simulator booted.")
    else:
        log.info("Simulator not booted.")
        sys.exit(1)


def main() -> None:
    """Command line interface for ipa2sim."""
    try:
        parser = argparse.ArgumentParser(
            prog="ipa2sim",
            description="Convert, re-sign and install iOS app archives into a booted simulator.",
            epilog=(
                "Examples:\n"
                "  ipa2sim run MyApp.ipa\n"
                "  ipa2sim run MyApp.ipa --converter /opt/homebrew/bin/simforge\n"
                "  ipa2sim status\n"
            ),
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        parser.add_argument(
            "--version",
            action="version",
            version=f"%(prog)s {__version__}",
        )

        subparsers = parser.add_subparsers(
            title="commands",
            dest="command",
            required=True,
        )

        # --- run subcommand ---
        run_parser = subparsers.add_parser(
            "run",
            help="convert, sign and install an .ipa archive",
            description=(
                "Extract an .ipa, convert its .app with simforge, ad-hoc sign it "
                "and its frameworks, move it next to the archive and install it "
                "into the booted simulator."
            ),
            epilog=(
                "Examples:\n"
                "  ipa2sim run MyApp.ipa\n"
                "  ipa2sim run MyApp.ipa -w /tmp/ipa_extracted\n"
                "  ipa2sim run MyApp.ipa --verbose --no-color\n"
            ),
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        run_parser.add_argument(
            "archive",
            help="path to the .ipa archive",
        )
        run_parser.add_argument(
            "-w",
            "--working-dir",
            metavar="DIR",
            help="scratch directory, wiped on every run (default: ~/Documents/ipa_extracted)",
        )
        run_parser.add_argument(
            "--converter",
            metavar="PATH",
            help=f"path to simforge (default: {DEFAULT_CONVERTER})",
        )
        run_parser.add_argument(
            "--unzip",
            metavar="PATH",
            help=f"path to unzip (default: {DEFAULT_UNZIP})",
        )
        run_parser.add_argument(
            "--codesign",
            metavar="PATH",
            help=f"path to codesign (default: {DEFAULT_CODESIGN})",
        )
        _add_common_options(run_parser)
        run_parser.set_defaults(func=_cmd_run)

        # --- status subcommand ---
        status_parser = subparsers.add_parser(
            "status",
            help="check whether a simulator is booted",
            description="Report whether a booted simulator is available.",
            epilog="Examples:\n  ipa2sim status\n",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        _add_common_options(status_parser)
        status_parser.set_defaults(func=_cmd_status)

        args = parser.parse_args()
        args.func(args)

    except Ipa2SimError as e:
        logging.error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        sys.exit(130)
    except Exception as e:
        logging.error("Unexpected error: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
