"""hrcompanion command-line interface."""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
from typing import Any, Dict, List, Optional

import uvicorn
from rich.console import Console
from rich.table import Table

from hrcompanion.associations import AssociationStore
from hrcompanion.config import CompanionConfig, load_config
from hrcompanion.models.broadcast import HrBroadcast
from hrcompanion.peripheral import PeripheralClient
from hrcompanion.presence import discover
from hrcompanion.service import CompanionService


def _load(args: argparse.Namespace) -> CompanionConfig:
	config = load_config(args.config)
	return config.with_overrides(
		api_level=getattr(args, "api_level", None),
		associations_path=getattr(args, "associations", None),
		metrics_path=getattr(args, "metrics", None),
		adapter=getattr(args, "adapter", None),
		absence_timeout=getattr(args, "absence_timeout", None),
	)


def _print_rows(title: str, columns: List[str], rows: List[Dict[str, Any]], as_json: bool) -> None:
	if as_json:
		json.dump(rows, sys.stdout, indent=2)
		sys.stdout.write("\n")
		return
	table = Table(title=title, show_lines=False)
	for column in columns:
		table.add_column(column.upper())
	for entry in rows:
		table.add_row(*("" if entry.get(column) is None else str(entry[column]) for column in columns))
	Console().print(table)


async def _cmd_scan(args: argparse.Namespace) -> int:
	config = _load(args)
	devices = await discover(args.timeout, name_prefix=args.prefix or None, adapter=config.adapter)
	_print_rows("Nearby Sensors", ["address", "name", "rssi"], devices, args.json)
	return 0


async def _cmd_associate(args: argparse.Namespace) -> int:
	store = AssociationStore(_load(args).associations_path)
	info = store.associate(args.address, display_name=args.name)
	_print_rows("Association", ["id", "device_mac_address", "display_name"], [info.to_dict()], args.json)
	return 0


async def _cmd_disassociate(args: argparse.Namespace) -> int:
	store = AssociationStore(_load(args).associations_path)
	if not store.disassociate(args.id):
		raise ValueError(f"association {args.id} not found")
	return 0


async def _cmd_associations(args: argparse.Namespace) -> int:
	store = AssociationStore(_load(args).associations_path)
	rows = [info.to_dict() for info in store.all()]
	_print_rows("Associations", ["id", "device_mac_address", "display_name", "device_profile"], rows, args.json)
	return 0


async def _cmd_run(args: argparse.Namespace) -> int:
	service = CompanionService.from_config(_load(args))

	loop = asyncio.get_running_loop()
	for sig in (signal.SIGINT, signal.SIGTERM):
		with contextlib.suppress(NotImplementedError):
			loop.add_signal_handler(sig, service.request_stop)

	try:
		await service.run(runtime=args.runtime)
	except KeyboardInterrupt:
		service.request_stop()
	return 0


async def _cmd_broadcasts(args: argparse.Namespace) -> int:
	config = _load(args)
	client = PeripheralClient(adapter=config.adapter)
	console = Console()
	done = asyncio.Event()
	failures: List[BaseException] = []

	def on_next(item: HrBroadcast) -> None:
		if args.json:
			sys.stdout.write(json.dumps(item.to_dict()) + "\n")
			sys.stdout.flush()
		else:
			console.print(f"{item.device_id} ({item.address}) HR: {item.hr} batt: {item.battery_status} rssi: {item.rssi}")

	def on_error(error: BaseException) -> None:
		failures.append(error)
		done.set()

	subscription = client.start_broadcast_listener(
		args.device_id or None,
		on_next,
		on_error,
		done.set,
		duration=args.runtime,
	)
	loop = asyncio.get_running_loop()
	for sig in (signal.SIGINT, signal.SIGTERM):
		with contextlib.suppress(NotImplementedError):
			loop.add_signal_handler(sig, done.set)
	try:
		await done.wait()
	finally:
		subscription.dispose()
		await client.shutdown()
	if failures:
		console.print(f"[red]Broadcast listener failed: {failures[0]}[/red]")
		return 1
	return 0


async def _cmd_serve(args: argparse.Namespace) -> int:
	server = uvicorn.Server(uvicorn.Config("hrcompanion.api:app", host=args.host, port=args.port, log_level="info"))
	await server.serve()
	return 0


def _build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(description="Companion device monitor for Polar heart-rate sensors")
	parser.add_argument("--config", help="Path to a JSON config file")
	parser.add_argument("--associations", help="Path to the associations JSON file")
	parser.add_argument("--adapter", help="BLE adapter identifier")
	parser.add_argument("-v", "--verbose", action="count", default=0, help="Increase log verbosity")
	sub = parser.add_subparsers(dest="command", required=True)

	scan = sub.add_parser("scan", help="Discover nearby sensors to associate")
	scan.add_argument("--timeout", type=float, default=6.0, help="Scan timeout in seconds")
	scan.add_argument("--prefix", default="Polar", help="Only list names starting with this (empty for all)")
	scan.add_argument("--json", action="store_true", help="Output JSON")
	scan.set_defaults(handler=_cmd_scan)

	associate = sub.add_parser("associate", help="Associate a sensor with this host")
	associate.add_argument("address", help="MAC/UUID of the sensor")
	associate.add_argument("--name", help="Display name")
	associate.add_argument("--json", action="store_true", help="Output JSON")
	associate.set_defaults(handler=_cmd_associate)

	disassociate = sub.add_parser("disassociate", help="Remove an association")
	disassociate.add_argument("id", type=int, help="Association id")
	disassociate.set_defaults(handler=_cmd_disassociate)

	listing = sub.add_parser("associations", help="List associated sensors")
	listing.add_argument("--json", action="store_true", help="Output JSON")
	listing.set_defaults(handler=_cmd_associations)

	run = sub.add_parser("run", help="Watch associated sensors and post presence notifications")
	run.add_argument("--api-level", type=int, dest="api_level", help="Callback generation to emulate")
	run.add_argument("--metrics", help="Path to the CSV event journal")
	run.add_argument("--absence-timeout", type=float, dest="absence_timeout", help="Seconds of silence before a device disappears")
	run.add_argument("--runtime", type=float, help="Optional run duration seconds")
	run.set_defaults(handler=_cmd_run)

	broadcasts = sub.add_parser("broadcasts", help="Print heart-rate advertisement broadcasts")
	broadcasts.add_argument("--device-id", action="append", dest="device_id", help="Only this Polar device id or address")
	broadcasts.add_argument("--runtime", type=float, help="Stop after this many seconds")
	broadcasts.add_argument("--json", action="store_true", help="Output JSON lines")
	broadcasts.set_defaults(handler=_cmd_broadcasts)

	serve = sub.add_parser("serve", help="Run the HTTP API")
	serve.add_argument("--host", default="127.0.0.1")
	serve.add_argument("--port", type=int, default=8000)
	serve.set_defaults(handler=_cmd_serve)

	return parser


def _configure_logging(verbosity: int) -> None:
	level = logging.WARNING
	if verbosity == 1:
		level = logging.INFO
	elif verbosity >= 2:
		level = logging.DEBUG
	logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def main(argv: Optional[List[str]] = None) -> int:
	parser = _build_parser()
	args = parser.parse_args(argv)
	_configure_logging(args.verbose)
	try:
		return asyncio.run(args.handler(args))
	except ValueError as exc:
		parser.error(str(exc))


if __name__ == "__main__":
	sys.exit(main())
