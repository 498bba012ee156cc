#!/usr/bin/env python3
"""osxsign - prepare macOS application bundles for code signing.

This module provides tools for:
1. Walking an .app bundle and listing every path that needs signing,
   ordered so nested code is always signed before the bundle holding it
2. Removing stale ``.cstemp`` files left behind by an interrupted
   codesign run
3. Validating signing options and detecting the Electron build platform

The walk result is meant to be fed, in order, to ``codesign``: binaries
come first, then the ``.framework`` or ``.app`` that contains them.

Usage (CLI):
    # Print the signing order for a bundle
    osxsign walk MyApp.app

    # Print the platform (darwin or mas) of an Electron build
    osxsign platform MyApp.app

Usage (API):
    from osxsign import SignOptions, Walker, validate_opts_app, walk

    opts = SignOptions("MyApp.app")
    validate_opts_app(opts)

    # Convenience function
    for path in walk(opts.app):
        print(path)

    # Or with injected collaborators
    walker = Walker(opts.app, log=logging.getLogger("signer"))
    paths = walker.walk()
"""

import argparse
import asyncio
import datetime
import logging
import os
import shutil
import stat
import subprocess
import sys
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import TypeVar, Union

# ----------------------------------------------------------------------------
# Constants

__version__ = "0.1.0"

# Type aliases
Pathlike = Path | str

T = TypeVar("T")

# Nested walk results: None, a leaf, or a list of further items
DeepListItem = Union[None, T, list["DeepListItem[T]"]]
DeepList = list[DeepListItem[T]]

# Temporary file suffix generated by a previous codesign run
STALE_ARTIFACT_EXTENSION = ".cstemp"

# Directory suffixes that are signed as a unit after their contents
APP_BUNDLE_EXTENSION = ".app"
FRAMEWORK_BUNDLE_EXTENSION = ".framework"
SIGNABLE_FOLDER_EXTENSIONS = [APP_BUNDLE_EXTENSION, FRAMEWORK_BUNDLE_EXTENSION]

# Electron build platforms
PLATFORM_DARWIN = "darwin"
PLATFORM_MAS = "mas"
PLATFORMS = (PLATFORM_DARWIN, PLATFORM_MAS)

# Only present in non-Mac App Store Electron builds
SQUIRREL_FRAMEWORK = "Squirrel.framework"

# Environment variable names
ENV_PLATFORM = "OSXSIGN_PLATFORM"

# Flags whose following value is a secret and must not be logged
SECRET_FLAGS = frozenset(["-P", "--password", "-pass", "/p", "pass:"])
REDACTED = "***"

# ----------------------------------------------------------------------------
# Optional dotenv support (zero production dependencies)


def _load_dotenv() -> None:
    """Attempt to load .env file if python-dotenv is available."""
    try:
        from dotenv import load_dotenv

        load_dotenv()
    except ImportError:
        pass


_load_dotenv()

# ----------------------------------------------------------------------------
# Configuration file support


def load_config(config_path: Path | None = None) -> dict[str, object]:
    """Load configuration from a TOML file.

    Searches for configuration in the following order:
    1. Explicit config_path if provided
    2. .osxsign.toml in current directory
    3. osxsign.toml in current directory

    Args:
        config_path: Optional explicit path to config file

    Returns:
        Configuration dictionary (empty if no config found)

    Example .osxsign.toml:
        [walk]
        platform = "darwin"
    """
    try:
        import tomllib
    except ImportError:
        try:
            import tomli as tomllib  # type: ignore[import-not-found,no-redef]
        except ImportError:
            return {}

    if config_path and config_path.exists():
        paths_to_try = [config_path]
    else:
        cwd = Path.cwd()
        paths_to_try = [
            cwd / ".osxsign.toml",
            cwd / "osxsign.toml",
        ]

    for path in paths_to_try:
        if path.exists():
            try:
                with open(path, "rb") as f:
                    data: dict[str, object] = tomllib.load(f)
                return data
            except (OSError, tomllib.TOMLDecodeError):
                continue

    return {}


def get_config_platform(config: dict[str, object]) -> str | None:
    """Return the ``[walk] platform`` setting, or None when unset.

    Raises:
        ConfigurationError: If ``walk`` is not a table or ``platform``
            is not a string
    """
    walk_section = config.get("walk")
    if walk_section is None:
        return None
    if not isinstance(walk_section, dict):
        raise ConfigurationError("Config section [walk] must be a table")

    platform = walk_section.get("platform")
    if platform is not None and not isinstance(platform, str):
        raise ConfigurationError(
            f"Config value [walk] platform must be a string, got {platform!r}"
        )
    return platform


# ----------------------------------------------------------------------------
# Error handling


class SignError(Exception):
    """Base exception class for osxsign errors."""


class CommandError(SignError):
    """Exception raised when a command fails."""

    def __init__(
        self, command: str, returncode: int, output: str | None = None
    ):
        self.command = command
        self.returncode = returncode
        self.output = output
        super().__init__(
            f"Command '{command}' failed with return code {returncode}"
        )


class FileError(SignError):
    """Exception raised when a file operation fails."""


class ConfigurationError(SignError):
    """Exception raised when configuration is invalid."""


class ValidationError(SignError):
    """Exception raised when validation fails."""


# ----------------------------------------------------------------------------
# Logging configuration


class CustomFormatter(logging.Formatter):
    """Custom logging formatting class with color support."""

    class color:
        """Text colors for terminal output."""

        white = "\x1b[97;20m"
        grey = "\x1b[38;20m"
        green = "\x1b[32;20m"
        yellow = "\x1b[33;20m"
        red = "\x1b[31;20m"
        bold_red = "\x1b[31;1m"
        reset = "\x1b[0m"

    cfmt = (
        f"{color.white}%(delta)s{color.reset} - "
        f"{{}}%(levelname)s{color.reset} - "
        f"{color.white}%(name)s.%(funcName)s{color.reset} - "
        f"{color.grey}%(message)s{color.reset}"
    )

    FORMATS = {
        logging.DEBUG: cfmt.format(color.grey),
        logging.INFO: cfmt.format(color.green),
        logging.WARNING: cfmt.format(color.yellow),
        logging.ERROR: cfmt.format(color.red),
        logging.CRITICAL: cfmt.format(color.bold_red),
    }

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color
        self.fmt = (
            "%(delta)s - %(levelname)s - %(name)s.%(funcName)s - %(message)s"
        )

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with color if enabled."""
        if not self.use_color:
            log_fmt = self.fmt
        else:
            log_fmt = self.FORMATS.get(record.levelno, self.fmt)
        duration = datetime.datetime.fromtimestamp(
            record.relativeCreated / 1000, datetime.timezone.utc
        )
        record.delta = duration.strftime("%H:%M:%S")
        formatter = logging.Formatter(log_fmt)
        return formatter.format(record)


def setup_logging(debug: bool = True, use_color: bool = True) -> None:
    """Configure logging for the application.

    Args:
        debug: Whether to enable debug logging
        use_color: Whether to use colored output
    """
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(CustomFormatter(use_color))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        handlers=[stream_handler],
    )


# ----------------------------------------------------------------------------
# Command execution utilities


def redact_password(args: Iterable[str]) -> str:
    """Join command arguments for display, masking secret values.

    Both ``-P secret`` and ``--password=secret`` forms are masked.

    Args:
        args: The command arguments

    Returns:
        Space separated arguments with secrets replaced by ``***``
    """
    redacted: list[str] = []
    args_iter = iter(args)
    for arg in args_iter:
        flag, sep, _ = arg.partition("=")
        if sep and flag in SECRET_FLAGS:
            redacted.append(f"{flag}={REDACTED}")
            continue

        if arg in SECRET_FLAGS:
            redacted.extend([arg, REDACTED])
            next(args_iter, None)
            continue

        redacted.append(arg)
    return " ".join(redacted)


def run_command(
    command: list[str],
    dry_run: bool = False,
    log: logging.Logger | None = None,
) -> str:
    """Run a command and return its output.

    Secret arguments (see ``SECRET_FLAGS``) never reach the log or the
    raised error. Uses shell=False for security.

    Args:
        command: The command as a list of arguments
        dry_run: If True, log command but don't execute (default: False)
        log: Optional logger for debug/dry-run output

    Returns:
        The command stdout output

    Raises:
        CommandError: If the command fails
    """
    cmd_str = redact_password(command)
    if log:
        log.debug("Executing... %s", cmd_str)
    if dry_run:
        if log:
            log.info("[DRY RUN] %s", cmd_str)
        return ""
    try:
        result = subprocess.run(
            command, shell=False, check=True, text=True, capture_output=True
        )
        return result.stdout
    except subprocess.CalledProcessError as e:
        if log:
            log.debug(
                "Error executing file:\n> Stdout: %s\n> Stderr: %s",
                e.stdout,
                e.stderr,
            )
        raise CommandError(cmd_str, e.returncode, e.stderr or e.output) from e
    except OSError as e:
        raise CommandError(cmd_str, 127, str(e)) from e


# ----------------------------------------------------------------------------
# Binary content detection

# Number of leading bytes inspected when sniffing a file
BINARY_SNIFF_SIZE = 512

# Share of suspicious bytes above which content is considered binary
SUSPICIOUS_BYTES_PERCENT = 10

# Mach-O magic numbers
MACHO_MAGIC_NUMBERS = {
    b"\xfe\xed\xfa\xce",  # MH_MAGIC (32-bit)
    b"\xce\xfa\xed\xfe",  # MH_CIGAM (32-bit, reverse byte order)
    b"\xfe\xed\xfa\xcf",  # MH_MAGIC_64 (64-bit)
    b"\xcf\xfa\xed\xfe",  # MH_CIGAM_64 (64-bit, reverse byte order)
    b"\xca\xfe\xba\xbe",  # FAT_MAGIC (universal binary)
    b"\xbe\xba\xfe\xca",  # FAT_CIGAM (universal binary, reverse byte order)
}

# Byte order marks of text encodings; longest first so UTF-32 LE wins
# over its UTF-16 LE prefix
TEXT_BOMS = (
    b"\x00\x00\xfe\xff",  # UTF-32 BE
    b"\xff\xfe\x00\x00",  # UTF-32 LE
    b"\xef\xbb\xbf",  # UTF-8
    b"\xfe\xff",  # UTF-16 BE
    b"\xff\xfe",  # UTF-16 LE
)

PDF_MAGIC = b"%PDF-"


def _utf8_sequence_length(chunk: bytes, index: int) -> int:
    """Return the length of a well-formed UTF-8 sequence at index, or 0."""
    lead = chunk[index]
    if 0xC0 <= lead <= 0xDF:
        expected = 2
    elif 0xE0 <= lead <= 0xEF:
        expected = 3
    elif 0xF0 <= lead <= 0xF7:
        expected = 4
    else:
        return 0

    continuation = chunk[index + 1 : index + expected]
    if len(continuation) != expected - 1:
        return 0
    if all(0x80 <= b <= 0xBF for b in continuation):
        return expected
    return 0


def is_binary_content(chunk: bytes) -> bool:
    """Decide whether the leading bytes of a file look binary.

    The check never looks at file names. Executables, dylibs and other
    compiled code are binary; plain text resources are not, whatever
    their extension.

    Args:
        chunk: The first bytes of a file (see ``BINARY_SNIFF_SIZE``)

    Returns:
        True if the content appears to be binary
    """
    if not chunk:
        return False

    if chunk[:4] in MACHO_MAGIC_NUMBERS:
        return True

    if chunk.startswith(TEXT_BOMS):
        return False

    if chunk.startswith(PDF_MAGIC):
        return True

    if b"\x00" in chunk:
        return True

    total = len(chunk)
    suspicious = 0
    i = 0
    while i < total:
        byte = chunk[i]
        if (byte < 7 or byte > 14) and (byte < 32 or byte > 127):
            length = _utf8_sequence_length(chunk, i)
            if length:
                i += length
                continue
            suspicious += 1
            if i >= 32 and suspicious * 100 / total > SUSPICIOUS_BYTES_PERCENT:
                return True
        i += 1

    return suspicious * 100 / total > SUSPICIOUS_BYTES_PERCENT


def is_binary_file(path: Pathlike) -> bool:
    """Check whether a file's content is binary.

    Args:
        path: Path to the file to check

    Returns:
        True if the file appears to be binary

    Raises:
        OSError: If the file cannot be read
    """
    with open(path, "rb") as f:
        chunk = f.read(BINARY_SNIFF_SIZE)
    return is_binary_content(chunk)


# ----------------------------------------------------------------------------
# Tree flattening


def compact_flattened_list(items: DeepListItem[T]) -> list[T]:
    """Flatten an arbitrarily nested list, dropping None entries.

    Leaves are returned depth-first, left to right. Duplicates are kept.

    Example:
        >>> compact_flattened_list([None, "a", ["b", [None, "c"]], []])
        ['a', 'b', 'c']
    """
    result: list[T] = []

    def populate_result(item: DeepListItem[T]) -> None:
        if isinstance(item, list):
            for child in item:
                if child is not None:
                    populate_result(child)
        elif item is not None:
            result.append(item)

    populate_result(items)
    return result


# ----------------------------------------------------------------------------
# Bundle walking


def remove_path(path: Pathlike) -> None:
    """Forcefully remove a file or directory.

    A path that no longer exists is not an error.

    Args:
        path: The path to remove

    Raises:
        OSError: If the path exists but cannot be removed
    """
    try:
        if os.path.isdir(path) and not os.path.islink(path):
            shutil.rmtree(path)
        else:
            os.remove(path)
    except FileNotFoundError:
        pass


class Walker:
    """Collect the paths inside a bundle that need signing, in order.

    Every binary file is listed. ``.app`` and ``.framework`` directories
    are listed after everything they contain, so signing the list
    front to back signs nested code before its container. Stale
    ``.cstemp`` files are deleted along the way. Symbolic links are
    neither followed nor listed.

    The children of a directory are processed concurrently; blocking
    filesystem calls run in worker threads.

    Args:
        path: Root directory to walk (usually the .app bundle)
        is_binary: Predicate deciding whether a regular file is binary
        log: Logger for progress messages (defaults to the class logger)

    Example:
        walker = Walker("MyApp.app")
        for path in walker.walk():
            print(path)
    """

    FOLDER_EXTENSIONS: list[str] = SIGNABLE_FOLDER_EXTENSIONS
    STALE_EXTENSION: str = STALE_ARTIFACT_EXTENSION

    def __init__(
        self,
        path: Pathlike,
        is_binary: Callable[[str], bool] = is_binary_file,
        log: logging.Logger | None = None,
    ) -> None:
        self.path = Path(path)
        self.is_binary = is_binary
        self.log = log or logging.getLogger(self.__class__.__name__)

    def walk(self) -> list[str]:
        """Walk the bundle and return the paths needing signing.

        Runs its own event loop; from a coroutine use walk_async().

        Returns:
            Absolute paths, children before their containing bundle

        Raises:
            FileError: If any directory, entry or stale file cannot be
                accessed; no partial result is returned
        """
        return asyncio.run(self.walk_async())

    async def walk_async(self) -> list[str]:
        """Coroutine version of walk()."""
        self.log.debug("Walking... %s", self.path)
        all_paths = await self._walk_dir(os.path.abspath(self.path))
        return compact_flattened_list(all_paths)

    async def _walk_dir(self, dir_path: str) -> DeepList[str]:
        try:
            children = await asyncio.to_thread(os.listdir, dir_path)
        except OSError as e:
            raise FileError(f"Cannot list directory {dir_path}: {e}") from e

        return list(
            await asyncio.gather(
                *(self._walk_child(dir_path, child) for child in children)
            )
        )

    async def _walk_child(self, dir_path: str, child: str) -> DeepListItem[str]:
        file_path = os.path.abspath(os.path.join(dir_path, child))

        try:
            st = await asyncio.to_thread(os.lstat, file_path)
        except OSError as e:
            raise FileError(f"Cannot stat {file_path}: {e}") from e

        if stat.S_ISREG(st.st_mode):
            if os.path.splitext(file_path)[1] == self.STALE_EXTENSION:
                await self._remove_stale(file_path)
                return None
            return await self._path_if_binary(file_path)

        if stat.S_ISDIR(st.st_mode):
            walk_result = await self._walk_dir(file_path)
            if os.path.splitext(file_path)[1] in self.FOLDER_EXTENSIONS:
                walk_result.append(file_path)
            return walk_result

        return None

    async def _remove_stale(self, file_path: str) -> None:
        self.log.debug("Removing... %s", file_path)
        try:
            await asyncio.to_thread(remove_path, file_path)
        except OSError as e:
            raise FileError(f"Cannot remove {file_path}: {e}") from e

    async def _path_if_binary(self, file_path: str) -> str | None:
        try:
            binary = await asyncio.to_thread(self.is_binary, file_path)
        except OSError as e:
            raise FileError(f"Cannot read {file_path}: {e}") from e
        return file_path if binary else None


def walk(dir_path: Pathlike, log: logging.Logger | None = None) -> list[str]:
    """Return every path under dir_path that needs signing, in order.

    See ``Walker`` for the ordering and cleanup rules. This starts an
    event loop, so code already running in one must await walk_async().
    """
    return Walker(dir_path, log=log).walk()


async def walk_async(
    dir_path: Pathlike, log: logging.Logger | None = None
) -> list[str]:
    """Coroutine version of walk()."""
    return await Walker(dir_path, log=log).walk_async()


# ----------------------------------------------------------------------------
# Signing options, bundle layout and platform detection


class SignOptions:
    """Options describing the application to sign.

    Args:
        app: Path to the .app bundle
        platform: Electron build platform ("darwin" or "mas"), detected
            from the bundle when not given
    """

    def __init__(self, app: Pathlike | None, platform: str | None = None):
        self.app = Path(app) if app else None
        self.platform = platform

    def __repr__(self) -> str:
        return f"SignOptions(app={self.app!r}, platform={self.platform!r})"


def get_app_contents_path(opts: SignOptions) -> Path:
    """Returns the path to the "Contents" folder inside the application bundle."""
    if opts.app is None:
        raise ValidationError("Path to application must be specified.")
    return opts.app / "Contents"


def get_app_frameworks_path(opts: SignOptions) -> Path:
    """Returns the path to app "Frameworks" within contents."""
    return get_app_contents_path(opts) / "Frameworks"


def detect_electron_platform(opts: SignOptions) -> str:
    """Detect whether the app is a regular or Mac App Store Electron build.

    Only regular (darwin) builds ship the Squirrel auto-update framework.

    Args:
        opts: Options holding the application path

    Returns:
        "darwin" or "mas"
    """
    squirrel = get_app_frameworks_path(opts) / SQUIRREL_FRAMEWORK
    if squirrel.exists():
        return PLATFORM_DARWIN
    return PLATFORM_MAS


def validate_opts_app(opts: SignOptions) -> None:
    """Validate the application to be signed or flattened.

    Args:
        opts: Options holding the application path

    Raises:
        ValidationError: If the path is missing, is not an .app, or
            does not exist
    """
    if not opts.app:
        raise ValidationError("Path to application must be specified.")
    if opts.app.suffix != APP_BUNDLE_EXTENSION:
        raise ValidationError("Extension of application must be `.app`.")
    if not opts.app.exists():
        raise ValidationError(
            f'Application at path "{opts.app}" could not be found'
        )


def validate_opts_platform(
    opts: SignOptions, log: logging.Logger | None = None
) -> str:
    """Validate the platform of the Electron build.

    Falls back to auto-discovery when no supported platform is given.

    Args:
        opts: Options holding the application path and platform
        log: Logger for warnings (defaults to the module logger)

    Returns:
        "darwin" or "mas"
    """
    log = log or logging.getLogger("osxsign")
    if opts.platform:
        if opts.platform in PLATFORMS:
            return opts.platform
        log.warning(
            "`platform` passed in arguments not supported, "
            "checking Electron platform..."
        )
    else:
        log.warning(
            "No `platform` passed in arguments, checking Electron platform..."
        )

    return detect_electron_platform(opts)


# ----------------------------------------------------------------------------
# Command-line interface


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    """Add common options to a parser."""
    parser.add_argument(
        "app",
        help="path to the .app bundle",
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


def _cmd_walk(args: argparse.Namespace) -> None:
    """Handle 'walk' subcommand."""
    setup_logging(args.verbose, not args.no_color)
    log = logging.getLogger("osxsign")

    opts = SignOptions(args.app)
    validate_opts_app(opts)

    paths = walk(opts.app, log=log)
    for path in paths:
        print(path)
    log.info("%d path(s) to sign in %s", len(paths), opts.app)


def _cmd_platform(args: argparse.Namespace) -> None:
    """Handle 'platform' subcommand."""
    setup_logging(args.verbose, not args.no_color)
    log = logging.getLogger("osxsign")

    platform = args.platform
    if platform is None:
        platform = get_config_platform(load_config())
    if platform is None:
        platform = os.getenv(ENV_PLATFORM)

    opts = SignOptions(args.app, platform=platform)
    validate_opts_app(opts)

    print(validate_opts_platform(opts, log=log))


def main() -> None:
    """Command line interface for osxsign."""
    try:
        parser = argparse.ArgumentParser(
            prog="osxsign",
            description="Prepare macOS app bundles for code signing.",
            epilog=(
                "Examples:\n"
                "  osxsign walk MyApp.app\n"
                "  osxsign platform MyApp.app --platform mas\n"
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

        # --- walk subcommand ---
        walk_parser = subparsers.add_parser(
            "walk",
            help="list paths needing signing, in signing order",
            description=(
                "List binaries and nested bundles that need signing, "
                "children before the bundle containing them. "
                "Stale .cstemp files are removed."
            ),
            epilog=(
                "Examples:\n"
                "  osxsign walk MyApp.app\n"
                "  osxsign walk MyApp.app --verbose\n"
            ),
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        _add_common_options(walk_parser)
        walk_parser.set_defaults(func=_cmd_walk)

        # --- platform subcommand ---
        platform_parser = subparsers.add_parser(
            "platform",
            help="print the Electron build platform (darwin or mas)",
            description=(
                "Validate the platform of an Electron build, detecting it "
                "from the bundle when none is given."
            ),
            epilog=(
                "Examples:\n"
                "  osxsign platform MyApp.app\n"
                "  osxsign platform MyApp.app --platform darwin\n"
            ),
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        platform_parser.add_argument(
            "-p",
            "--platform",
            metavar="PLATFORM",
            help=(
                "platform to validate "
                f"(or set {ENV_PLATFORM} env var / [walk] platform in config)"
            ),
        )
        _add_common_options(platform_parser)
        platform_parser.set_defaults(func=_cmd_platform)

        args = parser.parse_args()
        args.func(args)

    except SignError as e:
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
