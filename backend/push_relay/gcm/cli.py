# backend/push_relay/gcm/cli.py
from __future__ import annotations

import argparse
import logging
import sys
from typing import Dict, List, Optional, Sequence

from .errors import GcmClientError
from .schemas import Message, Notification
from .service import GcmService, build_gcm_service


def _parse_data(pairs: Sequence[str]) -> Dict[str, str]:
    """
    "key=value" 形式の引数を辞書に変換する。
    """
    data: Dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise argparse.ArgumentTypeError(f"invalid --data value (expected key=value): {pair!r}")
        data[key] = value
    return data


def _build_message(args: argparse.Namespace) -> Message:
    notification = None
    if args.title is not None or args.body is not None:
        notification = Notification(title=args.title, body=args.body)

    return Message(
        data=_parse_data(args.data),
        notification=notification,
        dry_run=True if args.dry_run else None,
        collapse_key=args.collapse_key,
        time_to_live=args.ttl,
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="GCM push relay")
    parser.add_argument("-v", "--verbose", action="store_true", help="DEBUG ログを出す")
    sub = parser.add_subparsers(dest="command", required=True)

    send = sub.add_parser("send", help="登録 ID へメッセージを送信する")
    send.add_argument("--to", action="append", required=True, help="送信先の登録 ID（複数指定可）")
    send.add_argument("--data", action="append", default=[], help="ペイロード key=value")
    send.add_argument("--title")
    send.add_argument("--body")
    send.add_argument("--collapse-key")
    send.add_argument("--ttl", type=int)
    send.add_argument("--retries", type=int)
    send.add_argument("--dry-run", action="store_true")

    validate = sub.add_parser("validate", help="登録 ID の有効性を確認する")
    validate.add_argument("registration_id")

    return parser


def main(argv: Optional[List[str]] = None, service: Optional[GcmService] = None) -> int:
    """
    簡易 CLI エントリーポイント。

    例:
        python -m push_relay.gcm.cli send --to <regId> --data score=4x8 --title hello
        python -m push_relay.gcm.cli validate <regId>
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)
    service = service or build_gcm_service()

    if args.command == "send":
        try:
            message = _build_message(args)
        except (argparse.ArgumentTypeError, ValueError) as exc:
            parser.error(str(exc))

        report = service.send_multicast(message, args.to, args.retries)
        if not report.is_completed:
            print(report.model_dump_json(indent=2), file=sys.stderr)
            return 1
        print(report.result.model_dump_json(indent=2))
        return 0

    try:
        valid = service.is_registration_valid(args.registration_id)
    except GcmClientError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    print("valid" if valid else "invalid")
    return 0


if __name__ == "__main__":
    sys.exit(main())
