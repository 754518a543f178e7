#!/usr/bin/env python3
"""graalbuild.py - provisions GraalVM and builds native images

features:

- Single script which downloads, extracts and caches GraalVM distributions
- Installs the native-image component with `gu` when a distribution lacks it
- Builds native executables and shared libraries from jars and classpaths
- Handles the Visual Studio / Windows SDK environment on Windows

cache structure:

<cache-root>/
    <graal-version>/
        <java-version>/
            graalvm-ce[-java<j>]-<graal-version>-amd64.(tar.gz|zip)
            <graal-directory-name>/
                bin/native-image
                bin/gu

class structure:

GraalSettings -> Configuration
PlatformInfo
ResolvedPaths
ToolchainHandle

ShellCmd
    Downloader
    Extractor
    AbstractCompileTask
        NativeImageTask
        SharedLibraryTask

WindowsEnvironment

"""

import argparse
import datetime
import json
import logging
import os
import platform
import re
import shutil
import subprocess
import sys
import tempfile
import zipfile
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Optional, Union
from urllib.error import HTTPError
from urllib.request import urlretrieve

__version__ = "0.1.0"

# ----------------------------------------------------------------------------
# type aliases

Pathlike = Union[str, Path]
DeferredOption = Callable[[], Optional[str]]
OptionValue = Union[str, DeferredOption]


# ----------------------------------------------------------------------------
# env helpers


def getenv(key: str, default: bool = False) -> bool:
    """convert '0','1' env values to bool {True, False}"""
    return bool(int(os.getenv(key, default)))


# ----------------------------------------------------------------------------
# constants

PY_VER_MINOR = sys.version_info.minor

DEFAULT_GRAAL_VERSION = "20.2.0"
DEFAULT_JAVA_VERSION = "8"
SUPPORTED_JAVA_VERSIONS = ["16", "11", "8"]

DEFAULT_DOWNLOAD_BASE_URL = "https://github.com/oracle/graal/releases/download/"
DOWNLOAD_BASE_URL_GRAAL_19_3 = (
    "https://github.com/graalvm/graalvm-ce-builds/releases/download/"
)
DOWNLOAD_BASE_URL_DEV = (
    "https://github.com/graalvm/graalvm-ce-dev-builds/releases/download/"
)

ARTIFACT_PATTERN_RC = "[url]/vm-[version]/graalvm-ce-[version]-[os]-[arch].tar.gz"
ARTIFACT_PATTERN = (
    "[url]/vm-[version]/graalvm-ce-[javaVersion]-[os]-[arch]-[version].[ext]"
)
ARTIFACT_PATTERN_DEV = "[url]/[version]/graalvm-ce-[javaVersion]-[os]-[arch]-dev.[ext]"
FILENAME_PATTERN = "graalvm-ce-[javaVersion]-[version]-[arch].[ext]"

CACHE_DIR_PROPERTY = "com.palantir.graal.cache.dir"

# binaries shipped as batch scripts rather than executables on windows
WINDOWS_CMD_BINARIES = {"native-image", "native-image-configure", "polyglot", "gu"}

WINDOWS_7_ENV_PATH = "C:\\Program Files\\Microsoft SDKs\\Windows\\v7.1\\Bin\\SetEnv.cmd"
DEFAULT_WINDOWS_VS_PATH = "C:\\Program Files (x86)\\Microsoft Visual Studio"
SUPPORTED_WINDOWS_VS_VERSIONS = ["2019", "2017"]
SUPPORTED_WINDOWS_VS_EDITIONS = ["Enterprise", "Professional", "Community"]

REFLECTION_CONFIG_FLAGS = [
    "allDeclaredConstructors",
    "allPublicConstructors",
    "allDeclaredMethods",
    "allPublicMethods",
    "allDeclaredFields",
    "allPublicFields",
]

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
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        """custom logger formatting method"""
        if not self.use_color:
            log_fmt: str = self.fmt
        else:
            log_fmt = self.FORMATS.get(record.levelno, self.fmt)
        if PY_VER_MINOR > 10:
            duration = datetime.datetime.fromtimestamp(
                record.relativeCreated / 1000, datetime.timezone.utc
            )
        else:
            duration = datetime.datetime.fromtimestamp(record.relativeCreated / 1000)
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


class GraalError(Exception):
    """Base exception for provisioning and compilation errors"""

    def __init__(self, message: str, returncode: int = 1) -> None:
        super().__init__(message)
        self.returncode = returncode


class UnsupportedPlatform(GraalError):
    """Host OS or architecture has no GraalVM distribution"""


class InvalidConfiguration(GraalError):
    """Settings are missing, forbidden or mutually incompatible"""


class CommandError(GraalError):
    """Exception for command execution errors"""


class DownloadFailed(GraalError):
    """Exception for download errors"""


class ExtractionFailed(GraalError):
    """Exception for extraction errors"""


class ToolchainCorrupt(GraalError):
    """Extracted distribution cannot provide native-image"""


class CompilationFailed(GraalError):
    """native-image exited with a nonzero code"""


class WindowsEnvUnavailable(GraalError):
    """No vcvars64.bat or SetEnv.cmd could be located"""


class Interrupted(GraalError):
    """A child process was interrupted or killed by a signal"""

    def __init__(self, message: str, returncode: int = 130) -> None:
        super().__init__(message, returncode)


# ----------------------------------------------------------------------------
# platform detection utilities


class OperatingSystem(Enum):
    MAC = "mac"
    LINUX = "linux"
    WINDOWS = "windows"
    UNKNOWN = "unknown"


class Architecture(Enum):
    AMD64 = "amd64"
    UNKNOWN = "unknown"


class PlatformInfo:
    """Centralized platform detection and configuration"""

    def __init__(
        self, system: Optional[str] = None, machine: Optional[str] = None
    ) -> None:
        self.system = platform.system() if system is None else system
        self.machine = platform.machine() if machine is None else machine

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} '{self.system}/{self.machine}'>"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PlatformInfo):
            return NotImplemented
        return (self.operating_system, self.architecture) == (
            other.operating_system,
            other.architecture,
        )

    def __hash__(self) -> int:
        return hash((self.operating_system, self.architecture))

    @property
    def operating_system(self) -> OperatingSystem:
        """classify host os; darwin is checked before the 'win' substring"""
        name = self.system.lower()
        if "darwin" in name or "mac" in name:
            return OperatingSystem.MAC
        if "linux" in name:
            return OperatingSystem.LINUX
        if "win" in name:
            return OperatingSystem.WINDOWS
        return OperatingSystem.UNKNOWN

    @property
    def architecture(self) -> Architecture:
        """classify host cpu family"""
        if self.machine.lower() in ("x86_64", "amd64", "x64"):
            return Architecture.AMD64
        return Architecture.UNKNOWN

    @property
    def is_darwin(self) -> bool:
        """Check if running on macOS"""
        return self.operating_system is OperatingSystem.MAC

    @property
    def is_linux(self) -> bool:
        """Check if running on Linux"""
        return self.operating_system is OperatingSystem.LINUX

    @property
    def is_windows(self) -> bool:
        """Check if running on Windows"""
        return self.operating_system is OperatingSystem.WINDOWS

    def require_supported(self) -> None:
        """raise UnsupportedPlatform unless both os and arch are known"""
        if self.operating_system is OperatingSystem.UNKNOWN:
            raise UnsupportedPlatform(f"No GraalVM support for {self.system}")
        if self.architecture is Architecture.UNKNOWN:
            raise UnsupportedPlatform(f"No GraalVM support for {self.machine}")

    @property
    def path_separator(self) -> str:
        """classpath separator of the host"""
        self.require_supported()
        return ";" if self.is_windows else ":"

    @property
    def executable_extension(self) -> str:
        """suffix native-image gives executables"""
        self.require_supported()
        return ".exe" if self.is_windows else ""

    @property
    def shared_library_extension(self) -> str:
        """suffix native-image gives shared libraries"""
        self.require_supported()
        if self.is_darwin:
            return ".dylib"
        if self.is_windows:
            return ".dll"
        return ".so"

    def binary_relpath(self, name: str) -> Path:
        """location of a distribution binary relative to the graal home"""
        self.require_supported()
        if self.is_darwin:
            return Path("Contents", "Home", "bin", name)
        if self.is_windows:
            suffix = ".cmd" if name in WINDOWS_CMD_BINARIES else ".exe"
            return Path("bin", name + suffix)
        return Path("bin", name)


# ----------------------------------------------------------------------------
# version predicates

_MAJOR_MINOR = re.compile(r"\A(\d+)\.(\d+)(?:\.|\Z)", re.ASCII)


class Era(Enum):
    """distribution naming era of a graal version"""

    RC = "rc"
    DEV = "dev"
    LEGACY = "legacy"
    MODERN = "modern"


def is_at_least(version: str, major: int, minor: int) -> bool:
    """true if the first two numeric components of version are >= major.minor"""
    match = _MAJOR_MINOR.match(version)
    if not match:
        return False
    major0, minor0 = int(match.group(1)), int(match.group(2))
    return major0 > major or (major0 == major and minor0 >= minor)


def is_rc(version: str) -> bool:
    """release candidates of the 1.0 line: 1.0.0-rc12"""
    return version.startswith("1.0.0-rc")


def is_dev(version: str) -> bool:
    """nightly dev builds: 22.1.0-dev-20220314_2252"""
    return "-dev-" in version


def cut_dev_suffix(version: str) -> str:
    """22.1.0-dev-20220314_2252 -> 22.1.0-dev"""
    return version[: version.index("-dev") + len("-dev")]


def era_of(version: str) -> Era:
    """classify version into its naming era"""
    if is_rc(version):
        return Era.RC
    if is_dev(version):
        return Era.DEV
    if is_at_least(version, 19, 3):
        return Era.MODERN
    return Era.LEGACY


# ----------------------------------------------------------------------------
# configuration


def _check_option(option: str) -> None:
    if option.strip().startswith("-H:Name="):
        raise InvalidConfiguration(f"Use 'outputName' instead of '{option}'")


def render_options(options: Iterable[OptionValue]) -> list[str]:
    """flatten literal and deferred options, dropping deferred values that are unset

    Raises:
        InvalidConfiguration: if an entry renders to -H:Name=... or is neither
            a string nor a callable
    """
    rendered: list[str] = []
    for entry in options:
        if isinstance(entry, str):
            value: Optional[str] = entry
        elif callable(entry):
            value = entry()
            if value is None:
                continue
        else:
            raise InvalidConfiguration(
                f"options must be either str or a callable returning str, was: {entry!r}"
            )
        _check_option(value)
        rendered.append(value)
    return rendered


@dataclass(frozen=True)
class Configuration:
    """Immutable view of the settings of one invocation.

    Validation happens when a value is read by the flow that needs it, so a
    missing main class does not prevent building a shared library.
    """

    graal_version: str = DEFAULT_GRAAL_VERSION
    java_version: str = DEFAULT_JAVA_VERSION
    download_base_url: Optional[str] = None
    main_class: Optional[str] = None
    output_name: Optional[str] = None
    options: tuple[OptionValue, ...] = ()
    jar_file: Optional[str] = None
    classpath: tuple[str, ...] = ()
    windows_vs_version: Optional[str] = None
    windows_vs_edition: Optional[str] = None
    windows_vs_vars_path: Optional[str] = None

    # keys accepted by from_dict, camelCase as written in host build files
    ALIASES = {
        "graalVersion": "graal_version",
        "javaVersion": "java_version",
        "downloadBaseUrl": "download_base_url",
        "mainClass": "main_class",
        "outputName": "output_name",
        "jarFile": "jar_file",
        "windowsVsVersion": "windows_vs_version",
        "windowsVsEdition": "windows_vs_edition",
        "windowsVsVarsPath": "windows_vs_vars_path",
    }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Configuration":
        """build a configuration from a json-style mapping"""
        kwargs: dict[str, Any] = {}
        known = {f.name for f in fields(cls)}
        for key, value in data.items():
            name = cls.ALIASES.get(key, key)
            if name not in known:
                raise InvalidConfiguration(f"Unknown configuration key: {key}")
            if name in ("classpath", "options"):
                if not isinstance(value, (list, tuple)):
                    raise InvalidConfiguration(f"{key} must be a list, was: {value!r}")
                if name == "classpath":
                    value = tuple(str(entry) for entry in value)
                else:
                    value = tuple(value)
            elif value is not None:
                value = str(value)
            kwargs[name] = value
        return cls(**kwargs)

    def check_java_version(self) -> str:
        """return java_version if it is one graal ships"""
        if self.java_version not in SUPPORTED_JAVA_VERSIONS:
            raise InvalidConfiguration(
                f"Java version {self.java_version} is not supported. "
                f"Supported versions are: {SUPPORTED_JAVA_VERSIONS}"
            )
        return self.java_version

    def check_versions(self) -> None:
        """ensure the graal/java version pair exists upstream"""
        java = self.check_java_version()
        if java == "16" and not is_at_least(self.graal_version, 21, 1):
            raise InvalidConfiguration(
                f"Unsupported GraalVM version {self.graal_version} "
                "for Java 16, needs >= 21.1.0."
            )
        if java != "8" and not is_at_least(self.graal_version, 19, 3):
            raise InvalidConfiguration(
                f"Unsupported Java version {java} for GraalVM version "
                f"{self.graal_version}, needs >= 19.3."
            )

    @property
    def era(self) -> Era:
        return era_of(self.graal_version)

    @property
    def resolved_download_base_url(self) -> str:
        """user override, otherwise the release host of the version's era"""
        self.check_versions()
        if self.download_base_url:
            return self.download_base_url
        if self.era is Era.DEV:
            return DOWNLOAD_BASE_URL_DEV
        if self.era is Era.MODERN:
            return DOWNLOAD_BASE_URL_GRAAL_19_3
        return DEFAULT_DOWNLOAD_BASE_URL

    @property
    def graal_directory_name(self) -> str:
        """name of the top level directory inside the distribution archive"""
        if self.era is Era.DEV:
            return f"graalvm-ce-java{self.java_version}-{cut_dev_suffix(self.graal_version)}"
        if self.era is Era.MODERN:
            return f"graalvm-ce-java{self.java_version}-{self.graal_version}"
        return f"graalvm-ce-{self.graal_version}"

    def rendered_options(self) -> list[str]:
        return render_options(self.options)

    def require_main_class(self) -> str:
        if not self.main_class:
            raise InvalidConfiguration(
                "nativeImage requires graal.mainClass to be defined."
            )
        return self.main_class

    def require_output_name(self) -> str:
        if not self.output_name:
            raise InvalidConfiguration("requires graal.outputName to be defined.")
        return self.output_name

    def require_jar_file(self) -> str:
        if not self.jar_file:
            raise InvalidConfiguration("requires a jar file to compile.")
        return self.jar_file


class GraalSettings:
    """Contains options and settings for tuning GraalVM use.

    Setters return self so calls can be chained; freeze() produces the
    immutable Configuration threaded through the pipeline.
    """

    def __init__(self) -> None:
        self._values: dict[str, Any] = {}
        self._options: list[OptionValue] = []
        self._classpath: list[str] = []

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self._values}>"

    def _set(self, name: str, value: Optional[str]) -> "GraalSettings":
        self._values[name] = value
        return self

    def graal_version(self, value: str) -> "GraalSettings":
        return self._set("graal_version", value)

    def java_version(self, value: str) -> "GraalSettings":
        return self._set("java_version", str(value))

    def download_base_url(self, value: str) -> "GraalSettings":
        return self._set("download_base_url", value)

    def main_class(self, value: str) -> "GraalSettings":
        return self._set("main_class", value)

    def output_name(self, value: str) -> "GraalSettings":
        return self._set("output_name", value)

    def jar_file(self, value: Pathlike) -> "GraalSettings":
        return self._set("jar_file", os.fspath(value))

    def windows_vs_version(self, value: str) -> "GraalSettings":
        return self._set("windows_vs_version", value)

    def windows_vs_edition(self, value: str) -> "GraalSettings":
        return self._set("windows_vs_edition", value)

    def windows_vs_vars_path(self, value: str) -> "GraalSettings":
        return self._set("windows_vs_vars_path", value)

    def option(self, value: OptionValue) -> "GraalSettings":
        """Add option from substratevm OPTIONS.md, or a callable producing one."""
        if isinstance(value, str):
            _check_option(value)
        self._options.append(value)
        return self

    def options(self, *values: OptionValue) -> "GraalSettings":
        for value in values:
            self.option(value)
        return self

    def classpath(self, *entries: Pathlike) -> "GraalSettings":
        self._classpath.extend(os.fspath(e) for e in entries)
        return self

    def freeze(self) -> Configuration:
        """snapshot the settings into a Configuration"""
        return Configuration(
            options=tuple(self._options),
            classpath=tuple(self._classpath),
            **self._values,
        )


# ----------------------------------------------------------------------------
# url, filename and cache layout


def _render(pattern: str, cfg: Configuration, info: PlatformInfo) -> str:
    info.require_supported()
    era = cfg.era
    if info.is_darwin:
        os_name = "darwin" if era in (Era.MODERN, Era.DEV) else "macos"
    else:
        os_name = info.operating_system.value
    java = f"java{cfg.java_version}" if era in (Era.MODERN, Era.DEV) else ""
    if era is Era.RC:
        ext = "tar.gz"
    else:
        ext = "zip" if info.is_windows else "tar.gz"
    base_url = cfg.resolved_download_base_url.rstrip("/")
    rendered = (
        pattern.replace("[version]", cfg.graal_version)
        .replace("[javaVersion]", java)
        .replace("[os]", os_name)
        .replace("[arch]", info.architecture.value)
        .replace("[ext]", ext)
    )
    # an empty java tag leaves a double dash behind
    return rendered.replace("--", "-").replace("[url]", base_url)


def compose_url(cfg: Configuration, info: PlatformInfo) -> str:
    """download url of the distribution archive"""
    pattern = {
        Era.RC: ARTIFACT_PATTERN_RC,
        Era.DEV: ARTIFACT_PATTERN_DEV,
    }.get(cfg.era, ARTIFACT_PATTERN)
    return _render(pattern, cfg, info)


def compose_filename(cfg: Configuration, info: PlatformInfo) -> str:
    """local filename of the cached distribution archive"""
    return _render(FILENAME_PATTERN, cfg, info)


def default_cache_root(properties: Optional[Mapping[str, str]] = None) -> Path:
    """cache root from the host property, else the gradle user home cache"""
    if properties and properties.get(CACHE_DIR_PROPERTY):
        return Path(properties[CACHE_DIR_PROPERTY])
    gradle_home = os.getenv("GRADLE_USER_HOME")
    base = Path(gradle_home) if gradle_home else Path.home() / ".gradle"
    return base / "caches" / "com.palantir.graal"


@dataclass(frozen=True)
class ResolvedPaths:
    """Deterministic cache locations of one (graal, java, platform) triple"""

    url: str
    cache_root: Path
    version_dir: Path
    archive: Path
    toolchain_dir: Path
    native_image: Path
    gu: Path


def resolve_paths(
    cfg: Configuration,
    info: Optional[PlatformInfo] = None,
    cache_root: Optional[Pathlike] = None,
) -> ResolvedPaths:
    """map configuration and platform onto the on-disk cache layout"""
    info = info or PlatformInfo()
    root = Path(cache_root) if cache_root is not None else default_cache_root()
    version_dir = root / cfg.graal_version / cfg.java_version
    toolchain_dir = version_dir / cfg.graal_directory_name
    return ResolvedPaths(
        url=compose_url(cfg, info),
        cache_root=root,
        version_dir=version_dir,
        archive=version_dir / compose_filename(cfg, info),
        toolchain_dir=toolchain_dir,
        native_image=toolchain_dir / info.binary_relpath("native-image"),
        gu=toolchain_dir / info.binary_relpath("gu"),
    )


@dataclass(frozen=True)
class ToolchainHandle:
    """A provisioned GraalVM installation with native-image available"""

    paths: ResolvedPaths
    platform: PlatformInfo = field(default_factory=PlatformInfo)

    @property
    def home(self) -> Path:
        return self.paths.toolchain_dir

    @property
    def native_image(self) -> Path:
        return self.paths.native_image


# ----------------------------------------------------------------------------
# utility classes


class ShellCmd:
    """Provides platform agnostic process, download and archive handling."""

    log: logging.Logger

    def cmd(
        self,
        shellcmd: Union[str, list[str]],
        cwd: Optional[Pathlike] = None,
        error: type[GraalError] = CommandError,
    ) -> None:
        """Run a command and wait for it.

        A string is handed to the OS unsplit (used for cmd.exe command lines).

        Args:
            shellcmd: Command as string or list of args
            cwd: Working directory for command execution
            error: Exception class raised on a nonzero exit

        Raises:
            Interrupted: If the wait is interrupted or the child is killed
            error: If the command cannot be launched or exits nonzero
        """
        cmdline = shellcmd if isinstance(shellcmd, str) else " ".join(shellcmd)
        self.log.info(cmdline)
        try:
            returncode = subprocess.call(
                shellcmd, cwd=None if cwd is None else str(cwd)
            )
        except KeyboardInterrupt:
            # subprocess.call has already killed the child
            self.log.critical("Interrupted: %s", cmdline)
            raise Interrupted(f"Interrupted: {cmdline}") from None
        except OSError as e:
            self.log.critical("Could not launch: %s", e, exc_info=True)
            raise error(f"Could not launch {cmdline}: {e}") from e
        if returncode < 0:
            self.log.critical("Killed by signal %s: %s", -returncode, cmdline)
            raise Interrupted(f"Killed by signal {-returncode}: {cmdline}")
        if returncode != 0:
            self.log.critical("Command failed with exit code %s", returncode)
            raise error(
                f"Command failed with exit code {returncode}: {cmdline}", returncode
            )

    def download(self, url: str, to: Pathlike) -> Path:
        """Download url to the file `to`, writing to a temporary sibling first

        Concurrent readers either see no file or a complete one.

        Raises:
            DownloadFailed: If the transfer fails for any reason
        """
        dest = Path(to)
        try:
            self.makedirs(dest.parent)
            fd, tmp = tempfile.mkstemp(prefix=dest.name + ".", suffix=".part", dir=dest.parent)
            os.close(fd)
        except OSError as e:
            self.log.critical("Cannot write to %s: %s", dest.parent, e)
            raise DownloadFailed(f"Failed to download {url}: {e}") from e
        try:
            self.log.info("Downloading %s...", url)
            urlretrieve(url, filename=tmp)
            os.replace(tmp, dest)
        except KeyboardInterrupt:
            self.remove(tmp, silent=True)
            self.log.critical("Interrupted: download of %s", url)
            raise Interrupted(f"Interrupted: download of {url}") from None
        except HTTPError as e:
            self.remove(tmp, silent=True)
            if e.code == 404:
                raise DownloadFailed(
                    f"Failed to download {url}: not found (404); "
                    "check that the graal/java version combination is published"
                ) from e
            raise DownloadFailed(f"Failed to download {url}: {e}") from e
        except Exception as e:
            self.remove(tmp, silent=True)
            raise DownloadFailed(f"Failed to download {url}: {e}") from e
        self.log.info("Download complete: %s", dest.name)
        return dest

    def unzip(self, archive: Pathlike, tofolder: Pathlike) -> None:
        """Extract a zip archive in-process

        Raises:
            ExtractionFailed: If the archive is unreadable
        """
        self.log.info("Extracting %s", os.path.basename(str(archive)))
        try:
            with zipfile.ZipFile(archive) as f:
                f.extractall(tofolder)
        except (OSError, zipfile.BadZipFile) as e:
            raise ExtractionFailed(f"Failed to extract {archive}: {e}") from e

    def untar(self, archive: Pathlike, tofolder: Pathlike) -> None:
        """Extract a tar.gz archive with the host tar, which preserves symlinks"""
        self.log.info("Extracting %s", os.path.basename(str(archive)))
        self.cmd(
            ["tar", "-xzf", str(Path(archive).absolute())],
            cwd=tofolder,
            error=ExtractionFailed,
        )

    def fail(self, msg: str, *args: str, error: type[GraalError] = GraalError) -> str:
        """Log critical and raise error with formatted message

        Returns:
            Never returns (always raises), but typed as str for property compatibility
        """
        formatted_msg = msg % args if args else msg
        self.log.critical(formatted_msg)
        raise error(formatted_msg)

    def makedirs(self, path: Pathlike, mode: int = 511, exist_ok: bool = True) -> None:
        """Recursive directory creation function"""
        self.log.debug("Making directory: %s", path)
        os.makedirs(path, mode, exist_ok)

    def move(self, src: Pathlike, dst: Pathlike) -> None:
        """Rename src to dst, both on the same filesystem."""
        self.log.debug("Moving %s to %s", src, dst)
        os.replace(src, dst)

    def remove(self, path: Pathlike, silent: bool = False) -> None:
        """Remove file or folder."""
        path = Path(path)
        if path.is_dir():
            if not silent:
                self.log.debug("Removing folder: %s", path)
            shutil.rmtree(path, ignore_errors=True)
        else:
            if not silent:
                self.log.debug("Removing file: %s", path)
            try:
                path.unlink()
            except FileNotFoundError:
                if not silent:
                    self.log.debug("File not found: %s", path)


# ----------------------------------------------------------------------------
# provisioning


class Downloader(ShellCmd):
    """Downloads and caches GraalVM binaries."""

    def __init__(self, paths: ResolvedPaths) -> None:
        self.paths = paths
        self.log = logging.getLogger(self.__class__.__name__)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} '{self.paths.url}'>"

    @property
    def archive_is_downloaded(self) -> bool:
        """return true if archive is downloaded"""
        return self.paths.archive.exists()

    def process(self) -> Path:
        """download the archive unless it is already cached"""
        if self.archive_is_downloaded:
            self.log.debug("Using cached archive: %s", self.paths.archive)
            return self.paths.archive
        return self.download(self.paths.url, self.paths.archive)


class Extractor(ShellCmd):
    """Extracts GraalVM tooling and installs native-image when missing."""

    def __init__(self, paths: ResolvedPaths, info: Optional[PlatformInfo] = None) -> None:
        self.paths = paths
        self.platform = info or PlatformInfo()
        self.log = logging.getLogger(self.__class__.__name__)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} '{self.paths.toolchain_dir}'>"

    @property
    def is_extracted(self) -> bool:
        return self.paths.toolchain_dir.exists()

    def unpack(self, tofolder: Path) -> None:
        """choose the unpacker by archive extension"""
        archive = self.paths.archive
        if archive.name.endswith(".zip"):
            self.unzip(archive, tofolder)
        elif archive.name.endswith(".tar.gz"):
            self.untar(archive, tofolder)
        else:
            self.fail("Unsupported archive type: %s", str(archive), error=ExtractionFailed)

    def ensure_native_image(self, home: Path) -> None:
        """install the native-image component with gu if the distribution lacks it"""
        native_image = home / self.platform.binary_relpath("native-image")
        if native_image.is_file():
            return
        gu = home / self.platform.binary_relpath("gu")
        if not gu.is_file():
            self.fail("Failed to find Graal update binary: %s", str(gu), error=ToolchainCorrupt)
        self.cmd([str(gu), "install", "native-image"], error=ToolchainCorrupt)
        if not native_image.is_file():
            self.fail(
                "native-image still missing after gu install: %s",
                str(native_image),
                error=ToolchainCorrupt,
            )

    def process(self) -> Path:
        """unpack into a staging dir, repair it, then rename it into place"""
        target = self.paths.toolchain_dir
        if self.is_extracted:
            self.log.debug("Using cached toolchain: %s", target)
            return target
        try:
            self.makedirs(self.paths.version_dir)
            staging = Path(
                tempfile.mkdtemp(
                    prefix=target.name + ".", suffix=".tmp", dir=self.paths.version_dir
                )
            )
        except OSError as e:
            self.log.critical("Cannot create staging directory in %s", self.paths.version_dir)
            raise ExtractionFailed(f"Failed to extract {self.paths.archive}: {e}") from e
        try:
            self.unpack(staging)
            unpacked = staging / target.name
            if not unpacked.is_dir():
                self.fail(
                    "could not find %s in %s",
                    target.name,
                    str(self.paths.archive),
                    error=ExtractionFailed,
                )
            self.ensure_native_image(unpacked)
            try:
                self.move(unpacked, target)
            except OSError as e:
                if not target.exists():
                    self.log.critical("Cannot move toolchain into %s", target)
                    raise ExtractionFailed(
                        f"Failed to install toolchain at {target}: {e}"
                    ) from e
                self.log.info("Toolchain installed concurrently: %s", target)
        finally:
            self.remove(staging, silent=True)
        return target


def provision_toolchain(
    cfg: Configuration,
    info: Optional[PlatformInfo] = None,
    cache_root: Optional[Pathlike] = None,
) -> ToolchainHandle:
    """download and extract the configured GraalVM, returning a handle to it"""
    info = info or PlatformInfo()
    paths = resolve_paths(cfg, info, cache_root)
    Downloader(paths).process()
    Extractor(paths, info).process()
    return ToolchainHandle(paths=paths, platform=info)


# ----------------------------------------------------------------------------
# windows environment


class WindowsEnvironment:
    """Locates the batch file that sets up the MSVC build environment."""

    def __init__(
        self,
        cfg: Configuration,
        vs_root: Pathlike = DEFAULT_WINDOWS_VS_PATH,
        sdk_setenv: Pathlike = WINDOWS_7_ENV_PATH,
    ) -> None:
        self.cfg = cfg
        self.vs_root = Path(vs_root)
        self.sdk_setenv = Path(sdk_setenv)
        self.log = logging.getLogger(self.__class__.__name__)

    @staticmethod
    def first_present(directory: Path, candidates: list[str]) -> Optional[str]:
        """first candidate name that exists under directory"""
        for name in candidates:
            if (directory / name).exists():
                return name
        return None

    def newest_vs_version(self) -> Optional[str]:
        return self.cfg.windows_vs_version or self.first_present(
            self.vs_root, SUPPORTED_WINDOWS_VS_VERSIONS
        )

    def biggest_vs_edition(self, version: str) -> Optional[str]:
        return self.cfg.windows_vs_edition or self.first_present(
            self.vs_root / version, SUPPORTED_WINDOWS_VS_EDITIONS
        )

    def search(self) -> Optional[Path]:
        """search order: user path, visual studio (java >= 11), windows 7 sdk"""
        if self.cfg.windows_vs_vars_path:
            user_path = Path(self.cfg.windows_vs_vars_path)
            if user_path.exists():
                return user_path
            self.log.warning("windowsVsVarsPath does not exist: %s", user_path)

        if int(self.cfg.check_java_version()) >= 11:
            version = self.newest_vs_version()
            edition = self.biggest_vs_edition(version) if version else None
            if version and edition:
                vcvars = (
                    self.vs_root / version / edition
                    / "VC" / "Auxiliary" / "Build" / "vcvars64.bat"
                )
                if vcvars.exists():
                    return vcvars
            return None

        if self.sdk_setenv.exists():
            return self.sdk_setenv
        return None

    def vcvars_path(self) -> Path:
        """path to vcvars64.bat or SetEnv.cmd

        Raises:
            WindowsEnvUnavailable: if no installation is found
        """
        found = self.search()
        if found is None:
            raise WindowsEnvUnavailable(
                "no suitable Windows SDK/VS installation found; "
                "set windowsVsVarsPath to your vcvars64.bat"
            )
        self.log.debug("Using build environment: %s", found)
        return found


# ----------------------------------------------------------------------------
# compile tasks


def write_windows_script(
    native_image: Pathlike,
    args: list[str],
    vcvars: Pathlike,
    quiet: bool = True,
    directory: Optional[Pathlike] = None,
) -> Path:
    """write a temporary .cmd running native-image inside the vcvars environment"""
    call = f'call "{vcvars}"'
    if quiet:
        call += " > nul"
    command = " ".join([f'"{native_image}"'] + [f'"{arg}"' for arg in args])
    fd, name = tempfile.mkstemp(
        prefix="native-image-", suffix=".cmd", dir=None if directory is None else str(directory)
    )
    with open(fd, "w", encoding="utf8", newline="\r\n") as f:
        f.write("\n".join(["@echo off", call, command]) + "\n")
    return Path(name)


def native_image_arguments(
    classpath: str,
    output_dir: Pathlike,
    options: list[str],
    output_name: str,
    main_class: Optional[str] = None,
    shared: bool = False,
) -> list[str]:
    """assemble the native-image command line

    native-image [--shared] -cp <classpath> -H:Path=<dir> <options...> -H:Name=<name> [<main>]
    """
    args = ["--shared"] if shared else []
    args.extend(["-cp", classpath, f"-H:Path={output_dir}"])
    args.extend(options)
    # last -H:Name wins, including names expanded from macro options
    args.append(f"-H:Name={output_name}")
    if main_class is not None:
        args.append(main_class)
    return args


class AbstractCompileTask(ShellCmd):
    """Runs native-image with configured options and parameters."""

    description: str
    shared: bool = False

    def __init__(
        self,
        cfg: Configuration,
        handle: ToolchainHandle,
        build_dir: Pathlike = "build",
        windows_env: Optional[WindowsEnvironment] = None,
    ) -> None:
        self.cfg = cfg
        self.handle = handle
        self.platform = handle.platform
        self.build_dir = Path(build_dir).absolute()
        self.windows_env = windows_env or WindowsEnvironment(cfg)
        self.log = logging.getLogger(self.__class__.__name__)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} '{self.cfg.output_name}'>"

    @property
    def output_extension(self) -> str:
        raise NotImplementedError

    @property
    def output_dir(self) -> Path:
        """native-image -H:Path target"""
        return self.build_dir / "graal"

    @property
    def output_file(self) -> Path:
        return self.output_dir / (self.cfg.require_output_name() + self.output_extension)

    def classpath_argument(self) -> str:
        """classpath entries then the jar, first occurrence wins"""
        entries = list(self.cfg.classpath) + [self.cfg.require_jar_file()]
        return self.platform.path_separator.join(dict.fromkeys(entries))

    def entry_point(self) -> Optional[str]:
        return None

    def arguments(self) -> list[str]:
        return native_image_arguments(
            self.classpath_argument(),
            self.output_dir,
            self.cfg.rendered_options(),
            self.cfg.require_output_name(),
            main_class=self.entry_point(),
            shared=self.shared,
        )

    def compile(self, args: list[str]) -> None:
        """launch native-image, through cmd.exe and vcvars on windows"""
        native_image = self.handle.native_image
        if not self.platform.is_windows:
            self.cmd([str(native_image)] + args, error=CompilationFailed)
            return
        vcvars = self.windows_env.vcvars_path()
        quiet = not self.log.isEnabledFor(logging.INFO)
        script = write_windows_script(native_image, args, vcvars, quiet=quiet)
        try:
            self.cmd(f'cmd.exe /E:ON /V:ON /c "{script}"', error=CompilationFailed)
        finally:
            self.remove(script, silent=True)

    def report(self) -> None:
        size_mb = self.output_file.stat().st_size // (1000 * 1000)
        self.log.warning("%s available at %s (%sMB)", self.description, self.output_file, size_mb)

    def process(self) -> Path:
        """main compile process"""
        args = self.arguments()
        try:
            self.makedirs(self.output_dir)
        except OSError as e:
            self.log.critical("Cannot create output directory %s", self.output_dir)
            raise CompilationFailed(f"Cannot create {self.output_dir}: {e}") from e
        self.compile(args)
        if self.output_file.exists():
            self.report()
        return self.output_file


class NativeImageTask(AbstractCompileTask):
    """Builds a native executable with a main class entry point."""

    description = "native-image"

    @property
    def output_extension(self) -> str:
        return self.platform.executable_extension

    def entry_point(self) -> Optional[str]:
        return self.cfg.require_main_class()


class SharedLibraryTask(AbstractCompileTask):
    """Builds a shared library."""

    description = "shared library"
    shared = True

    @property
    def output_extension(self) -> str:
        return self.platform.shared_library_extension


def build_executable(
    cfg: Configuration, handle: ToolchainHandle, build_dir: Pathlike = "build"
) -> Path:
    """compile cfg.jar_file into a native executable, returning its path"""
    return NativeImageTask(cfg, handle, build_dir).process()


def build_shared_library(
    cfg: Configuration, handle: ToolchainHandle, build_dir: Pathlike = "build"
) -> Path:
    """compile cfg.jar_file into a shared library, returning its path"""
    return SharedLibraryTask(cfg, handle, build_dir).process()


def write_reflection_config(classes: list[str], to: Pathlike) -> Optional[Path]:
    """write a reflectconfig.json opening up every member of classes"""
    if not classes:
        return None
    entries = [
        {"name": name, **dict.fromkeys(REFLECTION_CONFIG_FLAGS, True)}
        for name in classes
    ]
    path = Path(to)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf8") as f:
        json.dump(entries, f, indent=4)
    return path


# ----------------------------------------------------------------------------
# commandline api


def parse_properties(pairs: Optional[list[str]]) -> dict[str, str]:
    """KEY=VALUE strings to a dict"""
    properties: dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep:
            raise InvalidConfiguration(f"property must be KEY=VALUE: {pair}")
        properties[key.strip()] = value
    return properties


def settings_from_args(args: argparse.Namespace) -> Configuration:
    """layer commandline flags over an optional json config file"""
    base = Configuration()
    if args.config:
        with open(args.config, encoding="utf8") as f:
            base = Configuration.from_dict(json.load(f))

    settings = GraalSettings().options(*(args.option or []))
    for entry in args.classpath or []:
        settings.classpath(*[e for e in entry.split(os.pathsep) if e])
    extra = settings.freeze()
    overrides = {
        "graal_version": args.graal_version,
        "java_version": args.java_version,
        "download_base_url": args.download_base_url,
        "main_class": args.main_class,
        "output_name": args.output_name,
        "jar_file": args.jar,
        "windows_vs_version": args.vs_version,
        "windows_vs_edition": args.vs_edition,
        "windows_vs_vars_path": args.vs_vars_path,
    }
    return replace(
        base,
        options=base.options + extra.options,
        classpath=base.classpath + extra.classpath,
        **{name: value for name, value in overrides.items() if value is not None},
    )


def main(argv: Optional[list[str]] = None) -> None:
    """commandline api entrypoint"""

    parser = argparse.ArgumentParser(
        prog="graalbuild",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Provision GraalVM and build native images",
    )
    opt = parser.add_argument

    # fmt: off
    opt("task", choices=["download", "extract", "native-image", "shared-library", "reflect-config"],
        help="task to run (earlier provisioning steps run implicitly)")
    opt("-g", "--graal-version", help=f"graal version (default: {DEFAULT_GRAAL_VERSION})")
    opt("-j", "--java-version", help=f"java version (default: {DEFAULT_JAVA_VERSION})")
    opt("-u", "--download-base-url", help="override download base url", metavar="URL")
    opt("-m", "--main-class", help="entry point of the native executable")
    opt("-o", "--output-name", help="name of the produced artifact")
    opt("-O", "--option", help="native-image option (repeatable)", action="append", metavar="OPT")
    opt("-c", "--classpath", help="classpath entry (repeatable)", action="append", metavar="PATH")
    opt("-J", "--jar", help="jar file to compile")
    opt("-b", "--build-dir", default="build", help="build directory (default: %(default)s)")
    opt("-P", "--property", help="host property KEY=VALUE (repeatable)", action="append", metavar="PROP")
    opt("-r", "--reflect", help="class for reflectconfig.json (repeatable)", action="append", metavar="CLASS")
    opt("--cache-dir", help="cache root for graal distributions", metavar="DIR")
    opt("--config", help="json configuration file", metavar="FILE")
    opt("--vs-version", help="visual studio version (windows)")
    opt("--vs-edition", help="visual studio edition (windows)")
    opt("--vs-vars-path", help="path to vcvars64.bat (windows)", metavar="PATH")
    # fmt: on

    args = parser.parse_args(argv)
    log = logging.getLogger("graalbuild")

    try:
        cfg = settings_from_args(args)

        if args.task == "reflect-config":
            path = write_reflection_config(
                args.reflect or [], Path(args.build_dir) / "graal" / "reflectconfig.json"
            )
            if path:
                log.info("wrote %s", path)
            sys.exit(0)

        properties = parse_properties(args.property)
        cache_root = (
            Path(args.cache_dir) if args.cache_dir else default_cache_root(properties)
        )
        info = PlatformInfo()

        if args.task == "download":
            Downloader(resolve_paths(cfg, info, cache_root)).process()
            sys.exit(0)

        handle = provision_toolchain(cfg, info, cache_root)
        if args.task == "native-image":
            build_executable(cfg, handle, args.build_dir)
        elif args.task == "shared-library":
            build_shared_library(cfg, handle, args.build_dir)
    except GraalError as e:
        log.critical("%s", e)
        sys.exit(e.returncode)
    sys.exit(0)


if __name__ == "__main__":
    main()
