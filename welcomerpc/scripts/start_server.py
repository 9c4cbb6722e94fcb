import sys
import argparse

from welcomerpc.serve.configs import ServerConfigs
from welcomerpc.serve.server import RPCServer
from welcomerpc.service.errors import EndpointUnavailable, TransportFailure
from welcomerpc.service.service import WelcomeServicer
from welcomerpc.common_utils.debug_utils import get_logger, setup_logging

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Start the welcome RPC server.")
    parser.add_argument('--config', type=str, default=None, help='Path to a JSON server configuration file.')
    parser.add_argument('--host', type=str, default=None, help='Host to bind. Default: all interfaces.')
    parser.add_argument('--port', type=int, default=None, help='The server port. Default: $WELCOMERPC_PORT or 50051.')
    parser.add_argument('--log-level', type=str, default=None, help='VERBOSE, DEBUG, INFO, WARNING, ERROR or CRITICAL.')
    parser.add_argument('--drain-timeout', type=float, default=None, help='Seconds to wait for in-flight calls on shutdown.')
    return parser

def load_configs(args: argparse.Namespace) -> ServerConfigs:
    '''command line flags override the configuration file, which overrides the environment.'''
    configs = ServerConfigs.Load(args.config)
    overrides = {
        'host': args.host,
        'port': args.port,
        'log_level': args.log_level,
        'drain_timeout_secs': args.drain_timeout,
    }
    overrides = {k: v for k, v in overrides.items() if v is not None}
    if overrides:
        configs = ServerConfigs.model_validate({**configs.model_dump(), **overrides})
    return configs

def main(argv: list[str]|None=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        configs = load_configs(args)
        setup_logging(configs.log_level)
    except (OSError, ValueError) as e:
        print(f"Error: Invalid server configuration: {e}", file=sys.stderr)
        return 1
    logger = get_logger(configs.name)

    server = RPCServer.FromConfigs(configs, WelcomeServicer())
    try:
        server.bind()
        server.serve()
    except KeyboardInterrupt:
        logger.info("Shutting down the server...")
    except (EndpointUnavailable, TransportFailure) as e:
        logger.critical(f"failed to serve: {e}")
        return 1
    finally:
        server.stop()
    return 0


if __name__ == '__main__':
    sys.exit(main())
