from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
from pathlib import Path
from typing import Any, Optional, Sequence

from avd_orchestrator.config import load_config
from avd_orchestrator.errors import OrchestratorError
from avd_orchestrator.service import DeviceService

logger = logging.getLogger(__name__)


def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, indent=2, ensure_ascii=False)


def _print_devices(devices: list[dict]) -> None:
    if not devices:
        print("(no emulators found)")
        return
    width = max(len("name"), *(len(d["name"]) for d in devices))
    print(f"{'name'.ljust(width)}  status")
    print("-" * (width + 8))
    for d in devices:
        print(f"{d['name'].ljust(width)}  {d['status']}")


async def _run_devices(
    service: DeviceService,
    names: Sequence[str],
    *,
    force: bool,
    stop_event: Optional[asyncio.Event] = None,
) -> int:
    if stop_event is None:
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)

    results = await asyncio.gather(*(service.start(name) for name in names), return_exceptions=True)
    failures = 0
    for name, res in zip(names, results):
        if isinstance(res, BaseException):
            failures += 1
            logger.error("Failed to start %s: %s", name, res)
            continue
        print(_json_dumps(res))
        # First-boot provisioning already ran for this start.
        if force and res.get("provisioning") is None:
            print(_json_dumps(await service.provision(name, force=True)))

    if failures == len(names):
        return 2
    print("Emulators running; press Ctrl-C to stop.")
    await stop_event.wait()
    return 0 if failures == 0 else 2


async def _dispatch(args: argparse.Namespace, service: DeviceService) -> int:
    if args.command == "list":
        _print_devices(await service.list_devices())
        return 0
    if args.command == "create":
        res = await service.create_device(
            args.name,
            api_level=args.api_level,
            arch=args.arch,
            device=args.device,
            preferred_app_name=args.preferred_app,
            deeplink=args.deeplink,
        )
        print(_json_dumps(res))
        return 0
    if args.command == "delete":
        print(_json_dumps(await service.delete_device(args.name)))
        return 0
    if args.command == "apps":
        print(_json_dumps(await service.list_provisionable_apps()))
        return 0
    if args.command == "run":
        return await _run_devices(service, args.names, force=args.force_provision)
    raise AssertionError(f"unhandled command: {args.command}")


async def _main(args: argparse.Namespace, service: DeviceService) -> int:
    try:
        return await _dispatch(args, service)
    finally:
        await service.aclose()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="avdctl",
        description="Create, run and provision Android emulators.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to an orchestrator config file (.yaml/.yml/.json).",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO).",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("list", help="List emulator profiles and their status.")

    create = sub.add_parser("create", help="Create an emulator profile.")
    create.add_argument("name")
    create.add_argument("--api-level", type=int, default=None)
    create.add_argument("--arch", type=str, default=None)
    create.add_argument("--device", type=str, default=None, help="Device profile (e.g. pixel_5).")
    create.add_argument("--preferred-app", type=str, default=None)
    create.add_argument("--deeplink", type=str, default=None)

    delete = sub.add_parser("delete", help="Delete an emulator profile.")
    delete.add_argument("name")

    sub.add_parser("apps", help="List APKs available for provisioning.")

    run = sub.add_parser("run", help="Start emulators and keep them running until interrupted.")
    run.add_argument("names", nargs="+")
    run.add_argument(
        "--force-provision",
        action="store_true",
        help="Re-run provisioning even if it already completed.",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="[%(levelname)s] %(name)s: %(message)s",
    )

    try:
        config = load_config(args.config)
        service = DeviceService.from_config(config)
        return asyncio.run(_main(args, service))
    except OrchestratorError as e:
        print(f"error: {e}")
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
