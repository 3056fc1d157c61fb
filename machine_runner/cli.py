"""Command line entry point for machine-runner."""

from __future__ import annotations

import argparse
import json
import sys
from typing import List, Optional

from machine_runner import machine
from machine_runner.config import load_defaults
from machine_runner.constants import DEFAULT_MACHINE_NAME, REEXEC_FLAG, TRUTHY
from machine_runner.elevation import elevated_output_path
from machine_runner.exceptions import ManagerError
from machine_runner.models import CreateVMOpts, InitResult, PortMapping, SetOptions
from machine_runner.utils import get_env_bool, log, tee_log_to


def _bool_arg(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in TRUTHY:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise argparse.ArgumentTypeError(f"expected true or false, got '{value}'")


def parse_port(spec: str) -> PortMapping:
    """Parse ``[host_ip:]host_port:container_port[/protocol]``."""
    body, _, protocol = spec.partition("/")
    host_ip = ""
    if body.startswith("["):
        host_ip, sep, body = body[1:].partition("]:")
        if not sep:
            raise ManagerError(f"Invalid port mapping '{spec}'")
    else:
        parts = body.split(":")
        if len(parts) == 3:
            host_ip, body = parts[0], ":".join(parts[1:])
        elif len(parts) != 2:
            raise ManagerError(f"Invalid port mapping '{spec}'")
    host_port, _, container_port = body.partition(":")
    try:
        return PortMapping(
            host_ip=host_ip,
            host_port=int(host_port),
            container_port=int(container_port),
            protocol=protocol or "tcp",
        )
    except ValueError as exc:
        raise ManagerError(f"Invalid port mapping '{spec}'") from exc


def format_port(mapping: PortMapping) -> str:
    host = f"[{mapping.host_ip}]" if ":" in mapping.host_ip else mapping.host_ip
    ports = f"{mapping.host_port}:{mapping.container_port}"
    if mapping.range > 1:
        ports = (
            f"{mapping.host_port}-{mapping.host_port + mapping.range - 1}:"
            f"{mapping.container_port}-{mapping.container_port + mapping.range - 1}"
        )
    prefix = f"{host}:" if host else ""
    return f"{prefix}{ports}/{mapping.protocol}"


def _confirm(message: str) -> bool:
    print(message, end="", flush=True)
    if get_env_bool("MACHINE_ASSUME_YES", False):
        return True
    answer = input("Are you sure you want to continue? [y/N] ")
    return answer.strip().lower() in ("y", "yes")


def build_parser() -> argparse.ArgumentParser:
    defaults = load_defaults()
    parser = argparse.ArgumentParser(prog="machine-runner", description="Manage container host virtual machines")
    sub = parser.add_subparsers(dest="command", required=True)

    init = sub.add_parser("init", help="Create a new machine")
    init.add_argument("name", nargs="?", default=DEFAULT_MACHINE_NAME)
    init.add_argument("--cpus", type=int, default=int(defaults["cpus"]))
    init.add_argument("--memory", "-m", type=int, default=int(defaults["memory"]), help="Memory in MiB")
    init.add_argument("--disk-size", type=int, default=int(defaults["disk_size"]), help="Disk size in GiB")
    init.add_argument("--image-path", default=str(defaults["image"] or ""), help="Local image, release or channel")
    init.add_argument("--username", default=str(defaults["user"]))
    init.add_argument("--password", default="", help="Password for the guest user (hypervisor backend)")
    init.add_argument("--rootful", action="store_true", help="Connect to the rootful engine socket by default")
    init.add_argument("--user-mode-networking", action="store_true")
    init.add_argument("--volume", "-v", action="append", default=[], metavar="SRC:DST[:ro]")
    init.add_argument("--now", action="store_true", help="Start the machine once it is created")
    init.add_argument(REEXEC_FLAG, action="store_true", dest="reexec", help=argparse.SUPPRESS)

    start = sub.add_parser("start", help="Start a machine")
    start.add_argument("name", nargs="?", default=DEFAULT_MACHINE_NAME)
    start.add_argument("--quiet", "-q", action="store_true")

    stop = sub.add_parser("stop", help="Stop a machine")
    stop.add_argument("name", nargs="?", default=DEFAULT_MACHINE_NAME)
    stop.add_argument("--hard", action="store_true", help="Skip the graceful guest shutdown")

    rm = sub.add_parser("rm", help="Remove a machine")
    rm.add_argument("name", nargs="?", default=DEFAULT_MACHINE_NAME)
    rm.add_argument("--force", "-f", action="store_true", help="Stop a running machine and do not prompt")
    rm.add_argument("--save-keys", action="store_true")
    rm.add_argument("--save-image", action="store_true")

    set_ = sub.add_parser("set", help="Change machine settings")
    set_.add_argument("name", nargs="?", default=DEFAULT_MACHINE_NAME)
    set_.add_argument("--cpus", type=int)
    set_.add_argument("--memory", "-m", type=int)
    set_.add_argument("--disk-size", type=int)
    set_.add_argument("--rootful", type=_bool_arg, nargs="?", const=True)
    set_.add_argument("--user-mode-networking", type=_bool_arg, nargs="?", const=True)

    ls = sub.add_parser("ls", aliases=["list"], help="List machines")
    ls.add_argument("--format", choices=("table", "json"), default="table")

    inspect = sub.add_parser("inspect", help="Show machine details as JSON")
    inspect.add_argument("names", nargs="*", default=[DEFAULT_MACHINE_NAME])

    ports = sub.add_parser("ports", help="Show how port mappings are forwarded by a machine type")
    ports.add_argument("mappings", nargs="+", metavar="[IP:]HOST:CONTAINER[/PROTO]")
    ports.add_argument("--type", dest="vm_type", default=None)
    return parser


def _print_table(rows: List[dict]) -> None:
    headers = ("NAME", "VM TYPE", "STATE", "CPUS", "MEMORY", "DISK SIZE", "LAST UP")
    table = [headers] + [
        (
            row["name"],
            row["vm_type"],
            row["state"],
            str(row["cpus"]),
            f"{row['memory']}MiB",
            f"{row['disk_size']}GiB",
            row["last_up"] or "never",
        )
        for row in rows
    ]
    widths = [max(len(line[i]) for line in table) for i in range(len(headers))]
    for line in table:
        print("  ".join(cell.ljust(width) for cell, width in zip(line, widths)).rstrip())


def dispatch(args: argparse.Namespace, argv: List[str]) -> int:
    if args.command == "init":
        if args.reexec:
            tee_log_to(elevated_output_path())
        opts = CreateVMOpts(
            name=args.name,
            image_path=args.image_path,
            username=args.username,
            cpus=args.cpus,
            memory=args.memory,
            disk_size=args.disk_size,
            rootful=args.rootful,
            user_mode_networking=args.user_mode_networking,
            volumes=list(args.volume),
            password=args.password,
            reexec=args.reexec,
            argv=list(argv),
        )
        result = machine.init_machine(opts)
        if result is InitResult.PENDING:
            return 0
        if args.now:
            machine.start_machine(args.name)
        return 0

    if args.command == "start":
        machine.start_machine(args.name, quiet=args.quiet)
        return 0

    if args.command == "stop":
        machine.stop_machine(args.name, hard_stop=args.hard)
        return 0

    if args.command == "rm":
        machine.remove_machine(
            args.name,
            save_keys=args.save_keys,
            save_image=args.save_image,
            force=args.force,
            confirm=None if args.force else _confirm,
        )
        return 0

    if args.command == "set":
        opts = SetOptions(
            cpus=args.cpus,
            memory=args.memory,
            disk_size=args.disk_size,
            rootful=args.rootful,
            user_mode_networking=args.user_mode_networking,
        )
        if not opts.requested():
            log("WARN", "Nothing to change")
            return 0
        machine.set_machine(args.name, opts)
        log("SUCCESS", f"Updated {args.name}")
        return 0

    if args.command in ("ls", "list"):
        rows = machine.list_machines()
        if args.format == "json":
            print(json.dumps(rows, indent=2))
        else:
            _print_table(rows)
        return 0

    if args.command == "inspect":
        print(json.dumps([machine.inspect_machine(name) for name in args.names], indent=2))
        return 0

    if args.command == "ports":
        published = machine.publish_ports([parse_port(spec) for spec in args.mappings], args.vm_type)
        for mapping in published or []:
            print(format_port(mapping))
        return 0

    raise ManagerError(f"Unknown command {args.command}")


def main(argv: Optional[List[str]] = None) -> int:
    if argv is None:
        argv = sys.argv[1:]
    try:
        parser = build_parser()
        args = parser.parse_args(argv)
        return dispatch(args, argv)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    except KeyboardInterrupt:
        log("WARN", "Interrupted")
        return 130
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1
