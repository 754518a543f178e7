"""Tests for the commandline api"""

import argparse
import json
import os
import pytest
from pathlib import Path
from unittest.mock import patch
from graalbuild import (
    Configuration,
    DownloadFailed,
    InvalidConfiguration,
    REFLECTION_CONFIG_FLAGS,
    main,
    parse_properties,
    settings_from_args,
    write_reflection_config,
)


def namespace(**kwargs):
    defaults = dict(
        config=None,
        option=None,
        classpath=None,
        graal_version=None,
        java_version=None,
        download_base_url=None,
        main_class=None,
        output_name=None,
        jar=None,
        vs_version=None,
        vs_edition=None,
        vs_vars_path=None,
    )
    defaults.update(kwargs)
    return argparse.Namespace(**defaults)


class TestParseProperties:
    def test_pairs(self):
        assert parse_properties(["com.palantir.graal.cache.dir=/tmp/c", "a=b=c"]) == {
            "com.palantir.graal.cache.dir": "/tmp/c",
            "a": "b=c",
        }

    def test_none(self):
        assert parse_properties(None) == {}

    def test_missing_equals(self):
        with pytest.raises(InvalidConfiguration, match="KEY=VALUE"):
            parse_properties(["novalue"])


class TestSettingsFromArgs:
    def test_defaults(self):
        assert settings_from_args(namespace()) == Configuration()

    def test_flags(self):
        cfg = settings_from_args(
            namespace(
                graal_version="22.1.0",
                java_version="11",
                main_class="M",
                output_name="app",
                jar="app.jar",
                option=["--no-fallback"],
                classpath=[os.pathsep.join(["a.jar", "b.jar"]), "c.jar"],
            )
        )
        assert cfg.graal_version == "22.1.0"
        assert cfg.java_version == "11"
        assert cfg.main_class == "M"
        assert cfg.jar_file == "app.jar"
        assert cfg.options == ("--no-fallback",)
        assert cfg.classpath == ("a.jar", "b.jar", "c.jar")

    def test_flags_layer_over_config_file(self, tmp_path):
        config = tmp_path / "graal.json"
        config.write_text(
            json.dumps(
                {
                    "graalVersion": "21.0.0",
                    "javaVersion": 11,
                    "outputName": "from-file",
                    "options": ["-H:+ReportExceptionStackTraces"],
                    "classpath": ["lib.jar"],
                }
            )
        )
        cfg = settings_from_args(
            namespace(
                config=str(config),
                output_name="from-flag",
                option=["--no-fallback"],
                classpath=["extra.jar"],
            )
        )
        assert cfg.graal_version == "21.0.0"
        assert cfg.java_version == "11"
        assert cfg.output_name == "from-flag"
        assert cfg.options == ("-H:+ReportExceptionStackTraces", "--no-fallback")
        assert cfg.classpath == ("lib.jar", "extra.jar")

    def test_name_option_rejected(self):
        with pytest.raises(InvalidConfiguration, match="outputName"):
            settings_from_args(namespace(option=["-H:Name=app"]))


class TestReflectionConfig:
    def test_writes_entries(self, tmp_path):
        path = write_reflection_config(["a.B", "c.D"], tmp_path / "graal" / "reflectconfig.json")
        entries = json.loads(path.read_text())
        assert [e["name"] for e in entries] == ["a.B", "c.D"]
        for entry in entries:
            assert all(entry[flag] is True for flag in REFLECTION_CONFIG_FLAGS)

    def test_no_classes_no_file(self, tmp_path):
        assert write_reflection_config([], tmp_path / "reflectconfig.json") is None
        assert list(tmp_path.iterdir()) == []


class TestMain:
    def test_reflect_config(self, tmp_path):
        with pytest.raises(SystemExit) as excinfo:
            main(["reflect-config", "-b", str(tmp_path), "-r", "a.B"])
        assert excinfo.value.code == 0
        assert (tmp_path / "graal" / "reflectconfig.json").is_file()

    def test_download_uses_cache_dir(self, tmp_path):
        with patch('graalbuild.Downloader.process') as mock_process, \
             patch('platform.system', return_value="Linux"), \
             patch('platform.machine', return_value="x86_64"):
            with pytest.raises(SystemExit) as excinfo:
                main(["download", "-g", "22.1.0", "-j", "11", "--cache-dir", str(tmp_path)])
        assert excinfo.value.code == 0
        mock_process.assert_called_once()

    def test_unwritable_cache_dir_exit_code(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        with patch('graalbuild.urlretrieve') as mock_retrieve, \
             patch('platform.system', return_value="Linux"), \
             patch('platform.machine', return_value="x86_64"):
            with pytest.raises(SystemExit) as excinfo:
                main(["download", "-g", "22.1.0", "-j", "11", "--cache-dir", str(blocker / "cache")])
            mock_retrieve.assert_not_called()
        assert excinfo.value.code == 1

    def test_error_exit_code(self, tmp_path):
        with patch('graalbuild.provision_toolchain', side_effect=DownloadFailed("offline", 7)):
            with pytest.raises(SystemExit) as excinfo:
                main(["native-image", "--cache-dir", str(tmp_path)])
        assert excinfo.value.code == 7

    def test_invalid_configuration_exit_code(self, tmp_path):
        with pytest.raises(SystemExit) as excinfo:
            main(["reflect-config", "--option=-H:Name=x", "-b", str(tmp_path)])
        assert excinfo.value.code == 1

    def test_native_image_flow(self, tmp_path):
        with patch('graalbuild.provision_toolchain') as mock_provision, \
             patch('graalbuild.build_executable') as mock_build:
            with pytest.raises(SystemExit) as excinfo:
                main(
                    [
                        "native-image",
                        "-m", "M",
                        "-o", "app",
                        "-J", "app.jar",
                        "-b", str(tmp_path),
                        "-P", f"com.palantir.graal.cache.dir={tmp_path / 'cache'}",
                    ]
                )
        assert excinfo.value.code == 0
        cache_root = mock_provision.call_args[0][2]
        assert cache_root == Path(tmp_path / "cache")
        cfg, handle, build_dir = mock_build.call_args[0]
        assert cfg.output_name == "app"
        assert build_dir == str(tmp_path)
