#!/usr/bin/env python3
"""Thin CLI over the inventory HTTP API for checks outside the chat."""

from __future__ import annotations

import argparse
import json
import os
import sys
from typing import Any, Dict, Optional

import httpx


def _default_api_base() -> str:
    return os.environ.get("TALLYBOT_API_BASE", "http://localhost:8000/v1")


def _request(
    method: str,
    endpoint: str,
    *,
    api_base: str,
    params: Optional[Dict[str, Any]] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    url = endpoint if endpoint.startswith("http") else f"{api_base.rstrip('/')}/{endpoint.lstrip('/')}"
    with httpx.Client(timeout=15.0) as client:
        resp = client.request(method, url, params=params, json=payload)
    try:
        data = resp.json()
    except ValueError:
        data = {"text": resp.text}
    if resp.status_code == 409 and data.get("detail") == "no_snapshot":
        raise SystemExit("No weekly count yet. Start one in the chat with /weekly.")
    if resp.status_code >= 400:
        raise SystemExit(f"[{resp.status_code}] {json.dumps(data, indent=2)}")
    return data


def _print_rows(rows: list[Dict[str, Any]], value_key: str) -> None:
    for row in rows:
        print(f"  {row['name']}: {float(row[value_key]):.2f}")


def cmd_stock(args: argparse.Namespace, api_base: str) -> None:
    data = _request("GET", "/inventory/stock", api_base=api_base)
    if args.json:
        print(json.dumps(data, indent=2))
        return
    print(f"Snapshot {data['snapshotId']}")
    _print_rows(data["items"], "stockActual")


def cmd_shopping(args: argparse.Namespace, api_base: str) -> None:
    data = _request(
        "GET",
        "/inventory/suggested-purchases",
        api_base=api_base,
        params={"by_store": str(args.by_store).lower()},
    )
    if args.json:
        print(json.dumps(data, indent=2))
        return
    if args.by_store:
        for group in data.get("stores") or []:
            print(group["store"])
            _print_rows(group["items"], "shortfall")
    else:
        _print_rows(data.get("items") or [], "shortfall")


def cmd_set_base(args: argparse.Namespace, api_base: str) -> None:
    data = _request(
        "PUT",
        "/inventory/base-targets",
        api_base=api_base,
        payload={"name": args.name, "qty": args.qty},
    )
    print(f"{data['name']}: base target {float(data['baseQty']):.2f}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Inventory helper for stock, shopping lists and base targets.")
    parser.add_argument(
        "--api-base",
        default=_default_api_base(),
        help="Base API URL (default: %(default)s or TALLYBOT_API_BASE).",
    )
    parser.add_argument("--json", action="store_true", help="Print the raw JSON response.")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("stock", help="Show current stock for every active product.")

    shop = sub.add_parser("shopping", help="Show suggested purchases.")
    shop.add_argument("--by-store", action="store_true", help="Group suggestions by store.")

    base = sub.add_parser("set-base", help="Set the base target for one product.")
    base.add_argument("name", help="Product name or alias.")
    base.add_argument("qty", type=float, help="New base target.")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    api_base = args.api_base or _default_api_base()

    if args.command == "stock":
        cmd_stock(args, api_base)
    elif args.command == "shopping":
        cmd_shopping(args, api_base)
    elif args.command == "set-base":
        cmd_set_base(args, api_base)
    else:  # pragma: no cover
        parser.error(f"Unknown command {args.command}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
