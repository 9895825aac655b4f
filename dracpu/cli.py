import argparse
import logging
import sys
from pathlib import Path

import yaml
from rich.logging import RichHandler

from dracpu import __version__, cpuset
from dracpu.checkpoint import CheckpointStore, FileStore
from dracpu.config import DriverConfig, load_config
from dracpu.discovery import enumerate_all_possible_devices
from dracpu.errors import DraCpuError
from dracpu.resource import ResourceClaim
from dracpu.state import DeviceState
from dracpu.ui import console, data_table, error, info, section, status_box, success, warning

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    level = logging.INFO if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=verbose)],
        force=True,
    )


class DraCpuCLI:
    def __init__(self, cfg: DriverConfig, verbose: bool = False):
        self.cfg = cfg
        self.verbose = verbose

    def _debug(self, message: str):
        if self.verbose:
            console.print(f"[dim][DEBUG] {message}[/dim]")

    def show_config(self) -> int:
        section("DRIVER CONFIGURATION")
        status_box(
            "EFFECTIVE SETTINGS",
            {key.replace("_", " ").title(): value or "-" for key, value in self.cfg.to_dict().items()},
        )
        return 0

    def devices(self) -> int:
        """List every CPU device the driver would publish."""
        cpus = {
            "reserved": cpuset.parse(self.cfg.reserved_cpus),
            "shared": cpuset.parse(self.cfg.shared_cpus),
            "allocatable": cpuset.parse(self.cfg.allocatable_cpus),
        }
        catalog = enumerate_all_possible_devices(cpus)
        if not catalog:
            warning("No CPUs configured (see --reserved-cpus, --shared-cpus, --allocatable-cpus)")
            return 0

        rows = []
        for name in sorted(catalog, key=lambda n: catalog[n].attributes["index"]):
            device = catalog[name]
            rows.append([name, device.cpu_class, device.attributes["uuid"]])

        section("CPU DEVICES")
        data_table(
            columns=[
                {"name": "Device", "style": "cyan"},
                {"name": "Class"},
                {"name": "UUID", "style": "dim"},
            ],
            rows=rows,
            title=f"{len(rows)} devices",
        )
        return 0

    def claims(self) -> int:
        """List prepared claims from the checkpoint."""
        store = CheckpointStore(FileStore(self.cfg.plugin_path))
        prepared_claims = store.load()
        if not prepared_claims:
            info("No prepared claims", badge=True)
            return 0

        rows = []
        for uid, prepared in sorted(prepared_claims.items()):
            for pd in prepared:
                rows.append(
                    [
                        uid,
                        pd.device.device_name,
                        ", ".join(pd.device.request_names),
                        pd.device.pool_name,
                        len(pd.container_edits.env),
                    ]
                )

        section("PREPARED CLAIMS")
        data_table(
            columns=[
                {"name": "Claim UID", "style": "cyan"},
                {"name": "Device"},
                {"name": "Requests"},
                {"name": "Pool"},
                {"name": "Env", "justify": "right"},
            ],
            rows=rows,
        )
        return 0

    def prepare(self, claim_file: str) -> int:
        """Prepare a claim read from a YAML manifest."""
        path = Path(claim_file)
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            error(f"Malformed claim manifest {path}", details=str(e))
            return 1

        if not isinstance(data, dict):
            error(f"Claim manifest {path} must contain a mapping")
            return 1

        claim = ResourceClaim.from_dict(data)
        self._debug(f"Loaded claim {claim.uid} from {path}")

        self.cfg.validate()
        state = DeviceState.from_config(self.cfg)
        devices = state.prepare(claim)

        success(f"Prepared claim {claim.uid}")
        data_table(
            columns=[
                {"name": "Device", "style": "cyan"},
                {"name": "Requests"},
                {"name": "Pool"},
                {"name": "CDI devices", "style": "dim"},
            ],
            rows=[
                [d.device_name, ", ".join(d.request_names), d.pool_name, "\n".join(d.cdi_device_ids)]
                for d in devices
            ],
        )
        return 0

    def unprepare(self, claim_uid: str) -> int:
        self.cfg.validate()
        state = DeviceState.from_config(self.cfg)
        state.unprepare(claim_uid)
        success(f"Unprepared claim {claim_uid}")
        return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dra-cpu",
        description="Node-local DRA driver for CPU devices",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    # Global flags
    parser.add_argument("--version", "-V", action="version", version=f"dra-cpu {__version__}")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show detailed output")
    parser.add_argument("--config", "-c", help="YAML file with driver settings")
    parser.add_argument("--node-name", help="Name of this node [NODE_NAME]")
    parser.add_argument("--cdi-root", help="Directory for generated CDI specs [CDI_ROOT]")
    parser.add_argument("--plugin-path", help="Plugin state directory [DRA_CPU_PLUGIN_PATH]")
    parser.add_argument("--reserved-cpus", help="CPUs reserved for the system [RESERVED_CPUS]")
    parser.add_argument(
        "--allocatable-cpus", help="CPUs handed out exclusively [ALLOCATABLE_CPUS]"
    )
    parser.add_argument("--shared-cpus", help="CPUs in the shared pool [SHARED_CPUS]")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("config", help="Show the effective configuration")
    subparsers.add_parser("devices", help="List CPU devices")
    subparsers.add_parser("claims", help="List prepared claims")

    prepare_parser = subparsers.add_parser("prepare", help="Prepare a claim from a manifest")
    prepare_parser.add_argument("file", help="ResourceClaim YAML manifest")

    unprepare_parser = subparsers.add_parser("unprepare", help="Unprepare a claim")
    unprepare_parser.add_argument("uid", help="Claim UID")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(args.verbose)

    if not args.command:
        parser.print_help()
        return 0

    cfg = load_config(
        args.config,
        overrides={
            "node_name": args.node_name,
            "cdi_root": args.cdi_root,
            "plugin_path": args.plugin_path,
            "reserved_cpus": args.reserved_cpus,
            "allocatable_cpus": args.allocatable_cpus,
            "shared_cpus": args.shared_cpus,
        },
    )
    cli = DraCpuCLI(cfg, verbose=args.verbose)

    try:
        if args.command == "config":
            return cli.show_config()
        elif args.command == "devices":
            return cli.devices()
        elif args.command == "claims":
            return cli.claims()
        elif args.command == "prepare":
            return cli.prepare(args.file)
        elif args.command == "unprepare":
            return cli.unprepare(args.uid)
        else:
            parser.print_help()
            return 1
    except KeyboardInterrupt:
        console.print()
        error("Operation cancelled")
        return 130
    except (DraCpuError, ValueError, OSError) as e:
        error(f"Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
