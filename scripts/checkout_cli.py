"""Drive a checkout against a running proxy from the terminal.

Examples:
    python scripts/checkout_cli.py summary 42 --tip 20
    python scripts/checkout_cli.py pay 42 --provider ngenius --custom-tip 5
    python scripts/checkout_cli.py reconcile --payment-id 1001
"""

import argparse
import asyncio

from cafepay.client.api import ProxyClient
from cafepay.client.flows import default_flows
from cafepay.client.session import CheckoutSession
from cafepay.common.errors import CheckoutError


def apply_tip(session: CheckoutSession, args) -> None:
    if args.custom_tip is not None:
        session.set_custom_tip(args.custom_tip)
    elif args.tip is not None:
        session.select_tip(args.tip)


def print_summary(session: CheckoutSession) -> None:
    for line in session.order.summary_lines():
        print(line)
    for label, value in session.charge().display().items():
        print(f"{label}={value}")


async def summary(session: CheckoutSession, args) -> None:
    await session.load_order(args.order_id)
    apply_tip(session, args)
    print_summary(session)


async def pay(session: CheckoutSession, args) -> None:
    """Open a hosted-redirect session and print where to send the customer."""

    await session.load_order(args.order_id)
    apply_tip(session, args)
    print_summary(session)
    payment = await session.create_or_refresh_session(args.provider, args.method)
    outcome = await session.submit(payment)
    print(f"payment_id={payment.payment_id}")
    print(f"redirect_url={outcome.redirect_url}")


async def reconcile(session: CheckoutSession, args) -> None:
    if args.ref:
        result = await session.reconcile_by_reference(args.ref)
    else:
        result = await session.reconcile(args.payment_id)
    print(f"status={result.status}")
    print(result.message)
    if result.warning:
        print(f"warning={result.warning}")


async def run(args) -> int:
    api = ProxyClient(args.base_url, timeout=args.timeout)
    session = CheckoutSession(api, currency=args.currency, flows=default_flows(args.return_url))
    try:
        await args.handler(session, args)
    except CheckoutError as exc:
        print(f"error={exc.message}")
        return 1
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--base-url", default="http://localhost:3000/api/payment")
    parser.add_argument("--timeout", type=float, default=10.0)
    parser.add_argument("--currency", default="USD")
    parser.add_argument("--return-url", default=None)
    commands = parser.add_subparsers(required=True)

    for name, handler in (("summary", summary), ("pay", pay)):
        cmd = commands.add_parser(name)
        cmd.add_argument("order_id")
        cmd.add_argument("--tip", type=int, choices=[0, 10, 15, 20])
        cmd.add_argument("--custom-tip")
        cmd.set_defaults(handler=handler)
        if name == "pay":
            cmd.add_argument("--provider", default="ngenius", choices=["ngenius", "qclub"])
            cmd.add_argument("--method", default="card", choices=["card", "apple_pay", "google_pay"])

    rec = commands.add_parser("reconcile")
    target = rec.add_mutually_exclusive_group(required=True)
    target.add_argument("--payment-id")
    target.add_argument("--ref")
    rec.set_defaults(handler=reconcile)

    raise SystemExit(asyncio.run(run(parser.parse_args())))
