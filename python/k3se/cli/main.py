#!/usr/bin/env python3
"""
k3se/cli/main.py

A lightweight Kubernetes engine that deploys k3s clusters declaratively based
on a cluster config file. Example usage:

    k3se up                      # uses ./k3se.yml
    k3se up cluster.yml --kubeconfig ~/.kube/config
    k3se kubeconfig cluster.yml --kubeconfig ./admin.yaml
    k3se down cluster.yml

Subcommands:
  - up: deploy a new cluster or upgrade an existing one
  - down: destroy a cluster by removing k3s entirely from the nodes
  - kubeconfig: merge the cluster's admin kubeconfig into a local file
"""

import argparse
import asyncio
import logging
import sys
from importlib.metadata import PackageNotFoundError, version
from typing import List, Optional

from k3se.deployment import ops
from k3se.utils.config import DEFAULT_CONFIG_PATH
from k3se.utils.kubeconfig import DEFAULT_KUBECONFIG_PATH


def _version() -> str:
    try:
        return version("k3se")
    except PackageNotFoundError:
        return "dev"


async def _run_up(args: argparse.Namespace) -> None:
    await ops.up(args.config, args.kubeconfig)


async def _run_down(args: argparse.Namespace) -> None:
    await ops.down(args.config)


async def _run_kubeconfig(args: argparse.Namespace) -> None:
    await ops.kubeconfig(args.config, args.kubeconfig)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="k3se",
        description="A lightweight and declarative k3s engine.",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {_version()}"
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        default=False,
        help="Log debug output, including every remote command.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    up_parser = subparsers.add_parser(
        "up", help="Deploy a new cluster or upgrade an existing one."
    )
    up_parser.add_argument(
        "config",
        nargs="?",
        default=DEFAULT_CONFIG_PATH,
        help=f"Path to the cluster config (default: {DEFAULT_CONFIG_PATH}).",
    )
    up_parser.add_argument(
        "--kubeconfig",
        default=None,
        help="Also merge the admin kubeconfig into this file.",
    )
    up_parser.set_defaults(func=_run_up)

    down_parser = subparsers.add_parser(
        "down",
        help="Destroy a cluster. All data stored in the cluster is lost.",
    )
    down_parser.add_argument(
        "config",
        nargs="?",
        default=DEFAULT_CONFIG_PATH,
        help=f"Path to the cluster config (default: {DEFAULT_CONFIG_PATH}).",
    )
    down_parser.set_defaults(func=_run_down)

    kc_parser = subparsers.add_parser(
        "kubeconfig", help="Merge the cluster's admin kubeconfig into a local file."
    )
    kc_parser.add_argument(
        "config",
        nargs="?",
        default=DEFAULT_CONFIG_PATH,
        help=f"Path to the cluster config (default: {DEFAULT_CONFIG_PATH}).",
    )
    kc_parser.add_argument(
        "--kubeconfig",
        default=DEFAULT_KUBECONFIG_PATH,
        help=f"Local kubeconfig to write (default: {DEFAULT_KUBECONFIG_PATH}).",
    )
    kc_parser.set_defaults(func=_run_kubeconfig)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point for the k3se CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)-7s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
        stream=sys.stderr,
    )
    # asyncssh logs every channel at INFO.
    logging.getLogger("asyncssh").setLevel(
        logging.DEBUG if args.verbose else logging.WARNING
    )

    try:
        asyncio.run(args.func(args))
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
