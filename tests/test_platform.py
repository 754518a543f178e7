import pytest
from pathlib import Path
from graalbuild import (
    Architecture,
    OperatingSystem,
    PlatformInfo,
    UnsupportedPlatform,
)


@pytest.mark.parametrize(
    "system, expected",
    [
        ("Darwin", OperatingSystem.MAC),
        ("Linux", OperatingSystem.LINUX),
        ("Windows", OperatingSystem.WINDOWS),
        ("FreeBSD", OperatingSystem.UNKNOWN),
    ],
)
def test_operating_system(system, expected):
    assert PlatformInfo(system, "x86_64").operating_system is expected


@pytest.mark.parametrize(
    "machine, expected",
    [
        ("x86_64", Architecture.AMD64),
        ("AMD64", Architecture.AMD64),
        ("arm64", Architecture.UNKNOWN),
        ("i386", Architecture.UNKNOWN),
    ],
)
def test_architecture(machine, expected):
    assert PlatformInfo("Linux", machine).architecture is expected


def test_defaults_to_host():
    info = PlatformInfo()
    assert isinstance(info.system, str)
    assert isinstance(info.machine, str)


def test_equality_by_classification():
    assert PlatformInfo("Linux", "x86_64") == PlatformInfo("linux", "amd64")
    assert PlatformInfo("Linux", "x86_64") != PlatformInfo("Darwin", "x86_64")


class TestPlatformSpecifics:
    def test_path_separator(self):
        assert PlatformInfo("Linux", "x86_64").path_separator == ":"
        assert PlatformInfo("Darwin", "x86_64").path_separator == ":"
        assert PlatformInfo("Windows", "AMD64").path_separator == ";"

    def test_executable_extension(self):
        assert PlatformInfo("Linux", "x86_64").executable_extension == ""
        assert PlatformInfo("Windows", "AMD64").executable_extension == ".exe"

    def test_shared_library_extension(self):
        assert PlatformInfo("Darwin", "x86_64").shared_library_extension == ".dylib"
        assert PlatformInfo("Linux", "x86_64").shared_library_extension == ".so"
        assert PlatformInfo("Windows", "AMD64").shared_library_extension == ".dll"

    def test_binary_relpath_mac(self):
        info = PlatformInfo("Darwin", "x86_64")
        assert info.binary_relpath("native-image") == Path(
            "Contents", "Home", "bin", "native-image"
        )

    def test_binary_relpath_linux(self):
        info = PlatformInfo("Linux", "x86_64")
        assert info.binary_relpath("gu") == Path("bin", "gu")

    def test_binary_relpath_windows(self):
        info = PlatformInfo("Windows", "AMD64")
        assert info.binary_relpath("native-image") == Path("bin", "native-image.cmd")
        assert info.binary_relpath("native-image-configure") == Path(
            "bin", "native-image-configure.cmd"
        )
        assert info.binary_relpath("polyglot") == Path("bin", "polyglot.cmd")
        assert info.binary_relpath("gu") == Path("bin", "gu.cmd")
        assert info.binary_relpath("java") == Path("bin", "java.exe")


class TestUnsupported:
    def test_unknown_os(self):
        with pytest.raises(UnsupportedPlatform, match="No GraalVM support for SunOS"):
            PlatformInfo("SunOS", "x86_64").binary_relpath("native-image")

    def test_unknown_arch(self):
        with pytest.raises(UnsupportedPlatform, match="No GraalVM support for arm64"):
            PlatformInfo("Darwin", "arm64").path_separator
