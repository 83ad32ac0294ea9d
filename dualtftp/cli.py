from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional

from .client import DatagramClient, StreamClient
from .config import DEFAULT_LISTEN_ADDR, DEFAULT_PORT, DEFAULT_TIMEOUT, TransferConfig
from .errors import StorageError, TransferResult
from .logging import UserLogger
from .server import DatagramServer, StreamServer
from .transport import Binding
from .util import cli
from .util.io import to_path

logger = logging.getLogger(__name__)

CLIENTS = {Binding.STREAM: StreamClient, Binding.DATAGRAM: DatagramClient}
SERVERS = {Binding.STREAM: StreamServer, Binding.DATAGRAM: DatagramServer}


def _build_parser() -> argparse.ArgumentParser:
    argument_parser = argparse.ArgumentParser(
        prog="dualtftp",
        description="TFTP-like file transfer over a stream (TCP) or datagram (UDP) "
        "binding.",
    )

    subcommands = argument_parser.add_subparsers(
        title="command", dest="command", required=True
    )
    client_parser = subcommands.add_parser("client", help="Transfer one file")
    server_parser = subcommands.add_parser("server", help="Serve a data directory")

    for parser in (client_parser, server_parser):
        cli.add_verbose(parser)
        cli.add_timeout(parser, DEFAULT_TIMEOUT)
        parser.add_argument(
            "-t",
            "--transport",
            default=Binding.STREAM,
            help="Transport binding.",
            type=Binding,
            action=cli.EnumAction,
        )

    client_parser.add_argument(
        "-s",
        "--server",
        type=str,
        help="IP or hostname of the remote server.",
        required=True,
    )
    client_parser.add_argument(
        "-p",
        "--port",
        type=int,
        default=DEFAULT_PORT,
        help="Port of the remote server.",
    )
    client_actions = client_parser.add_mutually_exclusive_group(required=True)
    client_actions.add_argument(
        "-d",
        "--download",
        help="Download file from remote server. First argument is the remote "
        "filename, second argument is the local filepath.",
        nargs=2,
        metavar=("REMOTE", "LOCAL"),
    )
    client_actions.add_argument(
        "-u",
        "--upload",
        help="Upload file to remote server. First argument is the local filepath, "
        "second argument is the remote filename.",
        nargs=2,
        metavar=("LOCAL", "REMOTE"),
    )
    client_parser.add_argument(
        "--no-overwrite",
        dest="overwrite",
        action="store_false",
        help="Fail a download instead of replacing an existing local file.",
    )

    server_parser.add_argument(
        "-l",
        "--listen",
        help="IP address or hostname to listen on. By default binds to all.",
        default=DEFAULT_LISTEN_ADDR,
        type=str,
    )
    server_parser.add_argument(
        "-p", "--port", help="Port to listen on.", type=int, default=DEFAULT_PORT
    )
    server_parser.add_argument(
        "-d",
        "--data_dir",
        help="Directory files are served from and stored in.",
        type=to_path,
        default=None,
    )
    return argument_parser


def run_client(parsed_args: argparse.Namespace) -> TransferResult:
    config = TransferConfig(
        host=parsed_args.server, port=parsed_args.port, timeout=parsed_args.timeout
    )
    client = CLIENTS[parsed_args.transport].from_config(config)

    if parsed_args.download is not None:
        remote, local = parsed_args.download
        return client.download(remote, local, overwrite=parsed_args.overwrite)

    local, remote = parsed_args.upload
    return client.upload(local, remote)


def run_server(parsed_args: argparse.Namespace) -> None:
    config_kwargs = dict(
        host=parsed_args.listen, port=parsed_args.port, timeout=parsed_args.timeout
    )
    if parsed_args.data_dir is not None:
        config_kwargs["storage_root"] = parsed_args.data_dir
    config = TransferConfig(**config_kwargs)

    with SERVERS[parsed_args.transport](config) as server:
        logger.info("Data directory: %s", server.dispatcher.storage.root_dir)
        server.serve_forever()


def main(argv: Optional[List[str]] = None) -> int:
    parsed_args = _build_parser().parse_args(argv)

    UserLogger().add_stderr(logging.DEBUG if parsed_args.verbose else logging.INFO)

    if parsed_args.command == "client":
        result = run_client(parsed_args)
        print(result)
        return 0 if result.ok else 1

    try:
        run_server(parsed_args)
    except StorageError as e:
        logger.error("Cannot start server: %s", e)
    except KeyboardInterrupt:
        logger.error("KeyboardInterrupt detected, exiting")
    return 1


if __name__ == "__main__":
    sys.exit(main())
