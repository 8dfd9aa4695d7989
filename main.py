#!/usr/bin/env python3
"""
Clover Connector - command line runner

Connects to the terminal described in config.json, runs one command and
prints the result:

    python main.py sale 1000 --tip 100
    python main.py refund 500
    python main.py print "Thank you" "Come again"
    python main.py cancel
    python main.py drawer --reason "Till count"
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from clover_connector import Clover, CloverConfig, ConfigStore, ConnectionSettings
from clover_connector.errors import CloverError
from clover_connector.logging_config import setup_logging
from clover_connector.transactions import Completion

logger = logging.getLogger(__name__)

DEFAULT_READY_TIMEOUT = 60
DEFAULT_RESULT_TIMEOUT = 300


def _load_config():
    config_path = Path(__file__).parent / 'config.json'
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Run a command against a Clover terminal')
    parser.add_argument('--device-url', help='ws:// address of the terminal (overrides config.json)')
    parser.add_argument('--verbose', action='store_true', help='log every message sent and received')
    commands = parser.add_subparsers(dest='command', required=True)

    sale = commands.add_parser('sale', help='take a payment (amount in cents)')
    sale.add_argument('amount', type=int)
    sale.add_argument('--tip', type=int, default=0)
    sale.add_argument('--external-id')

    refund = commands.add_parser('refund', help='manual refund (amount in cents)')
    refund.add_argument('amount', type=int)

    print_text = commands.add_parser('print', help='print text lines')
    print_text.add_argument('lines', nargs='+')

    commands.add_parser('cancel', help='press cancel on the device')

    drawer = commands.add_parser('drawer', help='open the cash drawer')
    drawer.add_argument('--reason', default='Cash drawer opened')
    return parser


def run_command(clover: Clover, args) -> Completion:
    completion = Completion()
    if args.command == 'sale':
        request = {'amount': args.amount, 'tipAmount': args.tip}
        if args.external_id:
            request['externalPaymentId'] = args.external_id
        clover.sale(request, completion.resolve)
    elif args.command == 'refund':
        clover.refund({'amount': args.amount}, completion.resolve)
    elif args.command == 'print':
        clover.print(args.lines, completion.resolve)
    elif args.command == 'cancel':
        clover.send_cancel(completion.resolve)
    elif args.command == 'drawer':
        clover.open_cash_drawer(args.reason, completion.resolve)
    return completion


def main(argv=None) -> int:
    args = _build_parser().parse_args(argv)
    config = _load_config()
    setup_logging(log_path=config.get('log_path'), wire_debug=args.verbose)

    clover_values = dict(config.get('clover', {}))
    if args.device_url:
        clover_values['device_url'] = args.device_url
    settings = ConnectionSettings.from_dict(config.get('connection', {}))
    if args.verbose:
        settings.echo_all_messages = True
    store = ConfigStore(config['store_path']) if config.get('store_path') else None
    clover = Clover(CloverConfig.from_dict(clover_values) if clover_values else None,
                    settings=settings, store=store)

    try:
        ready = clover.init_device_connection()
        if not ready.wait(config.get('ready_timeout', DEFAULT_READY_TIMEOUT)):
            print("Device did not become ready in time")
            return 1
        if ready.error:
            print(f"Could not connect: {ready.error}")
            return 1
        logger.info(f"Device ready: {ready.result}")

        completion = run_command(clover, args)
        if not completion.wait(config.get('result_timeout', DEFAULT_RESULT_TIMEOUT)):
            print("No result from device")
            return 1
        if completion.error:
            print(f"{args.command} failed: {completion.error}")
        print(json.dumps(completion.result, indent=2, default=str))
        return 0 if completion.error is None else 1
    except CloverError as e:
        print(f"Error: {e}")
        return 1
    except KeyboardInterrupt:
        print("\nStopping...")
        return 130
    finally:
        clover.close()


if __name__ == '__main__':
    sys.exit(main())
