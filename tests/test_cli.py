"""
Tests for the dra-cpu operator CLI.
"""

import os
from unittest.mock import patch

import pytest
import yaml

from dracpu.checkpoint import CheckpointStore, FileStore
from dracpu.cli import build_parser, main
from dracpu.config import ENV_VARS

MANIFEST = """\
apiVersion: resource.k8s.io/v1beta1
kind: ResourceClaim
metadata:
  uid: claim-1
  namespace: default
  name: pinned-cpus
status:
  allocation:
    devices:
      results:
        - request: main
          driver: manager.cpu.com
          pool: node-a
          device: cpu-2
      config:
        - source: FromClaim
          requests: [main]
          opaque:
            driver: manager.cpu.com
            parameters:
              apiVersion: resource.cpu.com/v1alpha1
              kind: CpuConfig
              sharing:
                strategy: TimeSlicing
"""


@pytest.fixture(autouse=True)
def clean_env():
    with patch.dict(os.environ, {}, clear=False):
        for name in ENV_VARS.values():
            os.environ.pop(name, None)
        yield


@pytest.fixture
def node_args(tmp_path):
    return [
        "--node-name",
        "node-a",
        "--cdi-root",
        str(tmp_path / "cdi"),
        "--plugin-path",
        str(tmp_path / "plugin"),
        "--reserved-cpus",
        "0",
        "--allocatable-cpus",
        "1-3",
    ]


@pytest.fixture
def manifest(tmp_path):
    path = tmp_path / "claim.yaml"
    path.write_text(MANIFEST)
    return path


class TestParser:
    def test_no_command_prints_help(self, capsys):
        assert main([]) == 0
        assert "usage" in capsys.readouterr().out.lower()

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            build_parser().parse_args(["--version"])
        assert exc_info.value.code == 0
        assert "dra-cpu" in capsys.readouterr().out

    def test_prepare_requires_file(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["prepare"])


class TestConfigCommand:
    def test_shows_flag_values(self, node_args, capsys):
        assert main(node_args + ["config"]) == 0
        out = capsys.readouterr().out
        assert "node-a" in out
        assert "1-3" in out

    def test_reads_config_file(self, tmp_path, capsys):
        path = tmp_path / "driver.yaml"
        path.write_text("node-name: from-file\n")
        assert main(["--config", str(path), "config"]) == 0
        assert "from-file" in capsys.readouterr().out


class TestDevicesCommand:
    def test_lists_devices(self, node_args, capsys):
        assert main(node_args + ["devices"]) == 0
        out = capsys.readouterr().out
        for name in ("cpu-0", "cpu-1", "cpu-3"):
            assert name in out
        assert "reserved" in out

    def test_no_cpus(self, capsys):
        assert main(["devices"]) == 0
        assert "No CPUs configured" in capsys.readouterr().out

    def test_malformed_cpu_list(self, capsys):
        assert main(["--allocatable-cpus", "3-1", "devices"]) == 1
        assert "Error" in capsys.readouterr().out

    def test_overlapping_classes(self):
        assert main(["--reserved-cpus", "0-1", "--shared-cpus", "1", "devices"]) == 1


class TestClaimLifecycle:
    """Tests for prepare, claims and unprepare from the command line."""

    def test_prepare(self, node_args, manifest, tmp_path, capsys):
        assert main(node_args + ["prepare", str(manifest)]) == 0
        assert "Prepared claim claim-1" in capsys.readouterr().out

        claims = CheckpointStore(FileStore(tmp_path / "plugin")).load()
        env = claims["claim-1"][0].container_edits.env
        assert "CPU_DEVICE_2_TIMESLICE_INTERVAL=Default" in env

        spec = yaml.safe_load((tmp_path / "cdi" / "manager.cpu.com-cpu_claim-1.yaml").read_text())
        assert spec["devices"][0]["name"] == "claim-1-cpu-2"

    def test_prepare_then_list_then_unprepare(self, node_args, manifest, capsys):
        assert main(node_args + ["prepare", str(manifest)]) == 0
        capsys.readouterr()

        assert main(node_args + ["claims"]) == 0
        assert "claim-1" in capsys.readouterr().out

        assert main(node_args + ["unprepare", "claim-1"]) == 0
        assert "Unprepared claim claim-1" in capsys.readouterr().out

        assert main(node_args + ["claims"]) == 0
        assert "No prepared claims" in capsys.readouterr().out

    def test_prepare_is_idempotent(self, node_args, manifest, tmp_path):
        assert main(node_args + ["prepare", str(manifest)]) == 0
        assert main(node_args + ["prepare", str(manifest)]) == 0
        assert list(CheckpointStore(FileStore(tmp_path / "plugin")).load()) == ["claim-1"]

    def test_prepare_unknown_device(self, node_args, tmp_path, capsys):
        path = tmp_path / "claim.yaml"
        path.write_text(MANIFEST.replace("cpu-2", "cpu-9"))
        assert main(node_args + ["prepare", str(path)]) == 1
        assert "not allocatable" in capsys.readouterr().out
        assert CheckpointStore(FileStore(tmp_path / "plugin")).load() == {}

    def test_prepare_requires_node_name(self, manifest, tmp_path, capsys):
        args = ["--cdi-root", str(tmp_path / "cdi"), "--plugin-path", str(tmp_path / "plugin")]
        assert main(args + ["prepare", str(manifest)]) == 1
        assert "node name" in capsys.readouterr().out

    def test_prepare_malformed_manifest(self, node_args, tmp_path):
        path = tmp_path / "claim.yaml"
        path.write_text("metadata: [broken\n")
        assert main(node_args + ["prepare", str(path)]) == 1

    def test_prepare_manifest_without_uid(self, node_args, tmp_path):
        path = tmp_path / "claim.yaml"
        path.write_text("metadata:\n  name: nameless\n")
        assert main(node_args + ["prepare", str(path)]) == 1

    def test_prepare_result_without_device(self, node_args, tmp_path):
        path = tmp_path / "claim.yaml"
        path.write_text(
            "metadata:\n  uid: uid-9\nstatus:\n  allocation:\n    devices:\n"
            "      results:\n        - request: main\n"
        )
        assert main(node_args + ["prepare", str(path)]) == 1

    def test_prepare_missing_manifest(self, node_args, tmp_path):
        assert main(node_args + ["prepare", str(tmp_path / "absent.yaml")]) == 1

    def test_claims_without_checkpoint(self, node_args):
        """Test listing claims before the driver ever started is an error."""
        assert main(node_args + ["claims"]) == 1

    def test_unprepare_unknown_claim(self, node_args):
        assert main(node_args + ["unprepare", "never-prepared"]) == 0

    def test_keyboard_interrupt(self, node_args):
        with patch("dracpu.cli.DraCpuCLI.devices", side_effect=KeyboardInterrupt):
            assert main(node_args + ["devices"]) == 130
