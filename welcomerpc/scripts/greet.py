import sys
import argparse

from welcomerpc.serve.configs import ClientConfigs
from welcomerpc.serve.client import Connection, WelcomeServiceStub
from welcomerpc.service.errors import RPCError
from welcomerpc.service.message import WelcomeRequest
from welcomerpc.common_utils.debug_utils import get_logger, setup_logging

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Call SendWelcome on a welcome RPC server.")
    parser.add_argument('--addr', type=str, default=None, help='The address to connect to, `host:port`. Default: localhost:50051.')
    parser.add_argument('--name', type=str, default=None, help='Name to greet. Default: $WELCOMERPC_NAME or `world`.')
    parser.add_argument('--timeout', type=float, default=None, help='Call timeout in seconds.')
    parser.add_argument('--connect-timeout', type=float, default=None, help='Connection timeout in seconds.')
    parser.add_argument('--config', type=str, default=None, help='Path to a JSON client configuration file.')
    parser.add_argument('--log-level', type=str, default=None, help='VERBOSE, DEBUG, INFO, WARNING, ERROR or CRITICAL.')
    return parser

def load_configs(args: argparse.Namespace) -> ClientConfigs:
    configs = ClientConfigs.Load(args.config)
    overrides = {
        'target': args.addr,
        'name': args.name,
        'call_timeout_secs': args.timeout,
        'connect_timeout_secs': args.connect_timeout,
        'log_level': args.log_level,
    }
    overrides = {k: v for k, v in overrides.items() if v is not None}
    if overrides:
        configs = ClientConfigs.model_validate({**configs.model_dump(), **overrides})
    return configs

def main(argv: list[str]|None=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        configs = load_configs(args)
        setup_logging(configs.log_level)
    except (OSError, ValueError) as e:
        print(f"Error: Invalid client configuration: {e}", file=sys.stderr)
        return 1
    logger = get_logger('welcomerpc-greet')

    try:
        with Connection.FromConfigs(configs) as connection:
            response = WelcomeServiceStub(connection).send_welcome(WelcomeRequest(name=configs.name))   # type: ignore
    except RPCError as e:
        logger.error(f"could not greet: {type(e).__name__}: {e}")
        return 1
    print(f"Greeting: {response.message}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
