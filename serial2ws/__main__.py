"""Entry point: parse config and run the serial-to-WebSocket bridge with graceful shutdown."""

import asyncio
import sys

from serial2ws.bridge import list_available_ports
from serial2ws.config import config_from_args, parse_args
from serial2ws.service import run_bridge


def print_ports():
    ports = asyncio.run(list_available_ports())
    if not ports:
        print("No serial ports found")
    for info in ports:
        ids = f" [{info.vid:04X}:{info.pid:04X}]" if info.vid is not None and info.pid is not None else ""
        print(f"{info.device}\t{info.description or ''}\t{info.manufacturer or ''}{ids}")


def main(argv=None):
    try:
        args = parse_args(argv)
        if args.list_ports:
            print_ports()
            return
        config = config_from_args(args)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    try:
        run_bridge(
            config,
            verbose=args.verbose,
            settings_path=args.settings,
            settle_delay=args.settle_delay,
        )
    except (ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
