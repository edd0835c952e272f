"""Operator CLI for a running delta consumer."""

from __future__ import annotations

import argparse
import os
import sys
from typing import Any
from urllib.parse import urlparse

import httpx

_LOCALHOST_HOSTS = {"localhost", "127.0.0.1", "::1"}


def validate_server_url(server_url: str, allow_insecure_http: bool = False) -> str:
    """Validate server URL and enforce HTTPS for non-localhost hosts by default."""
    normalized = server_url.strip().rstrip("/")
    parsed = urlparse(normalized)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError("Server URL must include scheme and host (e.g. https://example.com)")

    hostname = parsed.hostname
    if parsed.scheme == "http" and not allow_insecure_http and hostname not in _LOCALHOST_HOSTS:
        raise ValueError(
            "HTTPS is required for non-localhost servers. "
            "Use --allow-insecure-http only on trusted networks."
        )

    return normalized


class ConsumerClient:
    """Client for the operational endpoints of a delta consumer."""

    def __init__(
        self,
        server_url: str,
        token: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.server_url = server_url.rstrip("/")
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self.client = httpx.Client(
            base_url=self.server_url,
            headers=headers,
            timeout=30.0,
            transport=transport,
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self.client.close()

    def __enter__(self) -> ConsumerClient:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        resp = self.client.request(method, path, **kwargs)
        resp.raise_for_status()
        return resp.json()

    def start_initial(self) -> dict[str, Any]:
        result: dict[str, Any] = self._request("POST", "/initial-sync-jobs")
        return result

    def cleanup_initial(self) -> dict[str, Any]:
        result: dict[str, Any] = self._request("DELETE", "/initial-sync-jobs")
        return result

    def start_delta(self) -> dict[str, Any]:
        result: dict[str, Any] = self._request("POST", "/delta-sync-jobs")
        return result

    def start_files(self) -> dict[str, Any]:
        result: dict[str, Any] = self._request("POST", "/file-sync-jobs")
        return result

    def jobs(self, operation: str) -> list[dict[str, Any]]:
        result: list[dict[str, Any]] = self._request(
            "GET", "/jobs", params={"operation": operation}
        )
        return result


def _detail(exc: httpx.HTTPStatusError) -> str:
    try:
        detail = exc.response.json().get("detail")
    except ValueError:
        detail = None
    return str(detail or exc.response.reason_phrase)


def run_command(client: ConsumerClient, args: argparse.Namespace) -> None:
    """Run one subcommand and print the server's answer."""
    if args.command == "start-initial":
        print(client.start_initial()["message"])
    elif args.command == "cleanup-initial":
        print(f"Removed {client.cleanup_initial()['removed']} initial sync job(s)")
    elif args.command == "start-delta":
        print(client.start_delta()["message"])
    elif args.command == "start-files":
        print(client.start_files()["message"])
    elif args.command == "jobs":
        jobs = client.jobs(args.operation)
        if not jobs:
            print("No jobs")
        for job in jobs:
            print(f"{job['created']}  {job['status']:<9} {job['uri']}")


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="delta-consumer-ctl",
        description="Trigger and inspect sync jobs of a delta consumer",
    )
    parser.add_argument(
        "--server",
        "-s",
        default=os.environ.get("DELTA_CONSUMER_URL", "http://localhost:8000"),
        help="Consumer URL (default: $DELTA_CONSUMER_URL or http://localhost:8000)",
    )
    parser.add_argument(
        "--allow-insecure-http",
        action="store_true",
        help="Allow http:// server URLs for non-localhost hosts",
    )
    parser.add_argument(
        "--token",
        default=os.environ.get("DELTA_CONSUMER_TOKEN"),
        help="API token (default: $DELTA_CONSUMER_TOKEN)",
    )

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("start-initial", help="Queue the initial sync")
    subparsers.add_parser("cleanup-initial", help="Remove all initial sync jobs")
    subparsers.add_parser("start-delta", help="Queue a delta sync")
    subparsers.add_parser("start-files", help="Queue a file sync pass")
    jobs_parser = subparsers.add_parser("jobs", help="List jobs of an operation")
    jobs_parser.add_argument(
        "--operation",
        "-o",
        default="delta",
        help="delta, initial or a job operation URI (default: delta)",
    )

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return

    try:
        server_url = validate_server_url(args.server, args.allow_insecure_http)
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    with ConsumerClient(server_url, args.token) as client:
        try:
            run_command(client, args)
        except httpx.HTTPStatusError as exc:
            print(f"Error: {exc.response.status_code} {_detail(exc)}")
            sys.exit(1)
        except httpx.HTTPError as exc:
            print(f"Error: could not reach {server_url}: {exc}")
            sys.exit(1)


if __name__ == "__main__":
    main()
