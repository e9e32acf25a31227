"""CLI entry point for syncwire.

Handles argument parsing and dispatches to request or check-config mode.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path

from syncwire.agent import Agent
from syncwire.config_loader import load_agent_config, validate_agent_config
from syncwire.errors import ConfigError, RequestError
from syncwire.models import AgentConfig, IpVersion
from syncwire.request import Request
from syncwire.response import Response


def non_negative_float(value: str) -> float:
    """Parse and validate a non-negative float value.

    Raises:
        argparse.ArgumentTypeError: If value is not a number >= 0.
    """
    try:
        result = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid number '{value}'.")
    if result < 0:
        raise argparse.ArgumentTypeError(f"Value must not be negative, got {result}.")
    return result


def non_negative_int(value: str) -> int:
    """Parse and validate a non-negative integer value.

    Raises:
        argparse.ArgumentTypeError: If value is not an integer >= 0.
    """
    try:
        result = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid integer '{value}'.")
    if result < 0:
        raise argparse.ArgumentTypeError(f"Value must not be negative, got {result}.")
    return result


def parse_header(value: str) -> tuple[str, str]:
    """Parse 'Name: value' format.

    Raises:
        argparse.ArgumentTypeError: If format is invalid.
    """
    name, sep, header_value = value.partition(":")
    if not sep or not name.strip():
        raise argparse.ArgumentTypeError(
            f"Invalid header '{value}'. Expected 'Name: value' (e.g., 'Accept: text/plain')"
        )
    return (name.strip(), header_value.strip())


def parse_query_pair(value: str) -> tuple[str, str]:
    """Parse KEY=VALUE format.

    Raises:
        argparse.ArgumentTypeError: If format is invalid.
    """
    key, sep, pair_value = value.partition("=")
    if not sep or not key:
        raise argparse.ArgumentTypeError(
            f"Invalid query parameter '{value}'. Expected KEY=VALUE (e.g., 'page=2')"
        )
    return (key, pair_value)


@dataclass
class RequestArgs:
    """Parsed arguments for request mode."""

    method: str
    url: str
    headers: list[tuple[str, str]]
    query: list[tuple[str, str]]
    data: str | None
    json_body: str | None
    data_file: Path | None
    config: Path | None
    redirects: int | None
    connect_timeout: float | None
    read_timeout: float | None
    write_timeout: float | None
    ip_version: IpVersion | None
    include: bool
    verbose: bool


@dataclass
class CheckConfigArgs:
    """Parsed arguments for check-config mode."""

    config: Path


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with request and check-config subcommands."""
    parser = argparse.ArgumentParser(
        prog="syncwire",
        description="Blocking HTTP/1.1 client.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True, help="Mode")

    # Request subcommand
    request_parser = subparsers.add_parser(
        "request",
        help="Send one request and print the response",
    )
    request_parser.add_argument("method", help="HTTP method (GET, POST, etc.)")
    request_parser.add_argument("url", help="Absolute URL, or a path resolved against http://localhost/")
    request_parser.add_argument(
        "-H", "--header",
        type=parse_header,
        action="append",
        default=[],
        dest="headers",
        metavar="'NAME: VALUE'",
        help="Add a request header (can be repeated)",
    )
    request_parser.add_argument(
        "-q", "--query",
        type=parse_query_pair,
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Add a query parameter (can be repeated)",
    )
    body_group = request_parser.add_mutually_exclusive_group()
    body_group.add_argument("-d", "--data", help="Send a text body")
    body_group.add_argument("--json", dest="json_body", metavar="JSON", help="Send a JSON body")
    body_group.add_argument("--data-file", type=Path, help="Stream the body from a file")
    request_parser.add_argument(
        "--config",
        type=Path,
        help="Agent configuration file (YAML)",
    )
    request_parser.add_argument(
        "--redirects",
        type=non_negative_int,
        help="Maximum redirects to follow (0 returns the 3xx response)",
    )
    request_parser.add_argument(
        "--connect-timeout",
        type=non_negative_float,
        help="Connect deadline in seconds (0 = none)",
    )
    request_parser.add_argument(
        "--read-timeout",
        type=non_negative_float,
        help="Per-read deadline in seconds (0 = none)",
    )
    request_parser.add_argument(
        "--write-timeout",
        type=non_negative_float,
        help="Per-write deadline in seconds (0 = none)",
    )
    family_group = request_parser.add_mutually_exclusive_group()
    family_group.add_argument(
        "-4", dest="ip_version", action="store_const", const=IpVersion.V4,
        help="Prefer IPv4 addresses",
    )
    family_group.add_argument(
        "-6", dest="ip_version", action="store_const", const=IpVersion.V6,
        help="Prefer IPv6 addresses",
    )
    request_parser.add_argument(
        "-i", "--include",
        action="store_true",
        help="Print the status line and response headers before the body",
    )
    request_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Log connection, pool, and redirect activity to stderr",
    )

    # Check-config subcommand
    check_parser = subparsers.add_parser(
        "check-config",
        help="Load and cross-validate an agent configuration file",
    )
    check_parser.add_argument(
        "config",
        type=Path,
        help="Agent configuration file (YAML)",
    )

    return parser


def parse_request_args(namespace: argparse.Namespace) -> RequestArgs:
    """Convert parsed namespace to RequestArgs dataclass."""
    return RequestArgs(
        method=namespace.method.upper(),
        url=namespace.url,
        headers=namespace.headers or [],
        query=namespace.query or [],
        data=namespace.data,
        json_body=namespace.json_body,
        data_file=namespace.data_file,
        config=namespace.config,
        redirects=namespace.redirects,
        connect_timeout=namespace.connect_timeout,
        read_timeout=namespace.read_timeout,
        write_timeout=namespace.write_timeout,
        ip_version=namespace.ip_version,
        include=namespace.include,
        verbose=namespace.verbose,
    )


def parse_args(args: list[str] | None = None) -> RequestArgs | CheckConfigArgs:
    """Parse command-line arguments and return typed args dataclass.

    Args:
        args: Command-line arguments to parse. If None, uses sys.argv[1:].

    Raises:
        SystemExit: If arguments are invalid (argparse behavior).
    """
    parser = build_parser()
    namespace = parser.parse_args(args)

    if namespace.command == "request":
        return parse_request_args(namespace)
    elif namespace.command == "check-config":
        return CheckConfigArgs(config=namespace.config)
    else:
        # Should not happen with required=True on subparsers
        parser.error(f"Unknown command: {namespace.command}")


def dispatch(parsed: RequestArgs | CheckConfigArgs) -> int:
    """Run the mode selected by ``parsed`` and return the exit code."""
    if isinstance(parsed, RequestArgs):
        return run_request(parsed)
    return run_check_config(parsed)


def main() -> int:
    """Main entry point."""
    try:
        return dispatch(parse_args())
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 1


def _build_request(agent: Agent, args: RequestArgs) -> Request:
    request = agent.request(args.method, args.url)
    for name, value in args.headers:
        request = request.set(name, value)
    for key, value in args.query:
        request = request.query(key, value)
    if args.redirects is not None:
        request = request.redirects(args.redirects)
    if args.connect_timeout is not None:
        request = request.timeout_connect(args.connect_timeout)
    if args.read_timeout is not None:
        request = request.timeout_read(args.read_timeout)
    if args.write_timeout is not None:
        request = request.timeout_write(args.write_timeout)
    if args.ip_version is not None:
        request = request.set_preferred_ip_version(args.ip_version)
    return request


def _send(request: Request, args: RequestArgs) -> Response:
    if args.json_body is not None:
        return request.send_json(json.loads(args.json_body))
    if args.data_file is not None:
        if not request.has("Content-Length") and not request.has("Transfer-Encoding"):
            request = request.set("Content-Length", str(args.data_file.stat().st_size))
        with open(args.data_file, "rb") as f:
            return request.send(f)
    if args.data is not None:
        return request.send_string(args.data)
    return request.call()


def _print_head(response: Response) -> None:
    print(f"HTTP/{response.http_version} {response.status} {response.status_text}".rstrip())
    for header in response.headers:
        print(header)
    print()


def run_request(args: RequestArgs) -> int:
    """Run request mode.

    Exits 0 for any response (4xx/5xx included) and 1 when the request
    itself fails.
    """
    if args.verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(levelname)s %(name)s: %(message)s",
            stream=sys.stderr,
        )

    try:
        config = load_agent_config(args.config) if args.config else AgentConfig()
    except ConfigError as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        return 1

    if args.json_body is not None:
        try:
            json.loads(args.json_body)
        except ValueError as e:
            print(f"Error: --json is not valid JSON: {e}", file=sys.stderr)
            return 1
    if args.data_file is not None and not args.data_file.is_file():
        print(f"Error: data file not found: {args.data_file}", file=sys.stderr)
        return 1

    with Agent(config) as agent:
        try:
            request = _build_request(agent, args)
            with _send(request, args) as response:
                if args.include:
                    _print_head(response)
                if response.synthetic:
                    print(f"Error: {response.synthetic_error}", file=sys.stderr)
                else:
                    body = response.into_string()
                    if body:
                        print(body, end="" if body.endswith("\n") else "\n")
        except RequestError as e:
            print(f"Error ({e.kind.value}): {e}", file=sys.stderr)
            return 1
        except ConfigError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

    return 0


def run_check_config(args: CheckConfigArgs) -> int:
    """Run check-config mode: load, cross-validate, and report."""
    try:
        config = load_agent_config(args.config)
    except ConfigError as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        return 1

    print(f"Validating: {args.config}")
    print(f"  Redirects: {config.redirects}")
    print(
        f"  Timeouts: connect={config.timeout_connect}s "
        f"read={config.timeout_read}s write={config.timeout_write}s"
    )
    print(f"  Pool: {config.max_idle_connections} idle total, {config.max_idle_per_host} per host")
    if config.headers:
        print(f"  Headers: {', '.join(config.headers)}")

    result = validate_agent_config(config)

    if result.warnings:
        print()
        print("Warnings:")
        for warning in result.warnings:
            print(f"  WARNING: {warning}")

    if result.errors:
        print()
        print("Errors:")
        for error in result.errors:
            print(f"  ERROR: {error}")
        print()
        print("Validation failed")
        return 1

    print()
    print("Validation successful")
    return 0


if __name__ == "__main__":
    sys.exit(main())
