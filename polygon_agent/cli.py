"""Command-line interface for polygon-agent.

Every command prints one JSON document: ``{"ok": true, ...}`` on stdout when it
succeeds, ``{"ok": false, "code": ..., "error": ..., "hint": ...}`` on stderr
with exit status 1 when it does not.  Logging goes to stderr as well so stdout
stays machine-readable.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence

import requests

from .builder import BuilderClient, BuilderIdentity, load_builder, save_builder, setup_builder
from .callback import CallbackServer, read_ciphertext_argument
from .config import AgentConfig, load_config
from .dispatcher import TransactionDispatcher
from .errors import AgentError, UsageError, WalletNotFoundError
from .fees import FeePreference
from .handshake import build_approval_url, create_request
from .indexer import IndexerClient
from .networks import format_units, parse_units, require_address, resolve_network
from .observer import FileHttpObserver, build_http_session
from .operations import (
    SwapQuoteSource,
    erc20_transfer_transactions,
    native_send_transactions,
    parse_slippage,
    prepare_swap,
    registry_call_transactions,
)
from .permissions import PermissionFlags, build_permission_params, describe_permissions
from .session import WalletSessionStore, ingest_session
from .storage import CredentialStore, utcnow
from .tokens import TokenDirectoryClient, TokenInfo, TokenResolver
from .wallet_client import WalletClientFactory

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # type: ignore[override]
        raise UsageError(message, hint=f"Run '{self.prog} --help' for usage.")


def _add_wallet_flag(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--wallet", default="main", help="Wallet name (default: main)")


def _add_broadcast_flag(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--broadcast",
        action="store_true",
        help="Sign and relay the transaction (default: dry run)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(prog="polygon-agent", description="Delegated session wallets for agents")
    parser.add_argument("--config", default=None, help="Path to a YAML config file")
    parser.add_argument("--home", default=None, help="State directory (default: ~/.polygon-agent)")
    parser.add_argument("--log-level", default=None, help="Logging level (default: WARNING)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    builder_parser = subparsers.add_parser("builder", help="manage the builder identity")
    builder_sub = builder_parser.add_subparsers(dest="builder_command", required=True)
    builder_setup = builder_sub.add_parser("setup", help="create an EOA, a project and its access key")
    builder_setup.add_argument("--name", required=True, help="Project name")
    builder_setup.add_argument("--force", action="store_true", help="Replace an existing identity")
    builder_save = builder_sub.add_parser("save", help="store the project access key")
    builder_save.add_argument("--access-key", required=True, help="Project access key")
    builder_sub.add_parser("show", help="show the stored builder identity")

    wallet_parser = subparsers.add_parser("wallet", help="link and manage session wallets")
    wallet_sub = wallet_parser.add_subparsers(dest="wallet_command", required=True)

    create = wallet_sub.add_parser("create", help="request a new delegated session")
    create.add_argument("--name", default="main", help="Wallet name (default: main)")
    create.add_argument("--chain", default=None, help="Chain name or id (default: polygon)")
    create.add_argument("--access-key", default=None, help="Project access key for this request")
    create.add_argument(
        "--no-wait",
        action="store_true",
        help="Print the approval URL and exit; deliver the ciphertext with 'wallet import'",
    )
    create.add_argument("--timeout", type=int, default=None, help="Callback wait in seconds")
    create.add_argument("--native-limit", default=None, help="Native asset spend ceiling")
    create.add_argument("--usdc-limit", default=None, help="USDC spend ceiling (default: 50)")
    create.add_argument("--usdt-limit", default=None, help="USDT spend ceiling")
    create.add_argument(
        "--token-limit",
        action="append",
        default=[],
        metavar="SYMBOL:AMOUNT",
        help="Per-token spend ceiling; repeatable",
    )
    create.add_argument("--usdc-to", default=None, help="Fixed recipient for a one-off USDC grant")
    create.add_argument("--usdc-amount", default=None, help="Amount for the one-off USDC grant")
    create.add_argument(
        "--contract", action="append", default=[], help="Whitelist a contract address; repeatable"
    )

    ingest = wallet_sub.add_parser("import", help="ingest a ciphertext delivered out of band")
    ingest.add_argument("--name", default=None, help="Wallet name used when the request was created")
    ingest.add_argument("--ciphertext", required=True, help="Ciphertext, or @path to read it from a file")
    ingest.add_argument("--rid", default=None, help="Request id (default: auto-detect by --name)")

    wallet_sub.add_parser("list", help="list linked wallets")
    address = wallet_sub.add_parser("address", help="show a wallet's address")
    address.add_argument("--name", default="main")
    remove = wallet_sub.add_parser("remove", help="delete a stored wallet session")
    remove.add_argument("--name", required=True)

    balances = subparsers.add_parser("balances", help="show native and ERC-20 balances")
    _add_wallet_flag(balances)
    balances.add_argument("--chain", default=None)

    send = subparsers.add_parser("send", help="send native tokens or an ERC-20")
    _add_wallet_flag(send)
    send.add_argument("--to", required=True, help="Recipient address")
    send.add_argument("--amount", required=True, help="Human-readable amount")
    send.add_argument("--symbol", default=None, help="ERC-20 symbol (omit for native)")
    send.add_argument("--token", default=None, help="ERC-20 contract address")
    send.add_argument("--decimals", type=int, default=None, help="Decimals for --token")
    send.add_argument(
        "--direct", action="store_true", help="Send native value directly instead of via the forwarder"
    )
    send.add_argument("--fee-token", default=None, help="Pay relayer fees with this ERC-20 symbol")
    _add_broadcast_flag(send)

    swap = subparsers.add_parser("swap", help="swap tokens through the quote source")
    _add_wallet_flag(swap)
    swap.add_argument("--from", dest="from_symbol", required=True)
    swap.add_argument("--to", dest="to_symbol", required=True)
    swap.add_argument("--amount", required=True)
    swap.add_argument("--slippage", default=None, help="Fraction between 0 and 0.5 (default: 0.005)")
    _add_broadcast_flag(swap)

    registry = subparsers.add_parser("registry", help="agent identity/reputation registries")
    registry_sub = registry.add_subparsers(dest="registry_command", required=True)
    call = registry_sub.add_parser("call", help="call a registry with pre-encoded calldata")
    _add_wallet_flag(call)
    call.add_argument("--registry", required=True, help="identity, reputation or contract address")
    call.add_argument("--data", required=True, help="0x-prefixed calldata")
    call.add_argument("--value", default=None, help="Native value to attach")
    _add_broadcast_flag(call)

    return parser


@dataclass
class CommandContext:
    """Collaborators shared by the commands of one invocation."""

    config: AgentConfig
    store: CredentialStore
    http_session: requests.Session
    wallet_client_factory: WalletClientFactory | None = None
    swap_quotes: SwapQuoteSource | None = None

    @property
    def sessions(self) -> WalletSessionStore:
        return WalletSessionStore(self.store)

    def resolver(self) -> TokenResolver:
        directory = TokenDirectoryClient(self.config.token_directory_url, session=self.http_session)
        return TokenResolver(token_map=self.config.token_map, directory=directory)

    def indexer(self) -> IndexerClient:
        return IndexerClient(self.config, session=self.http_session)

    def dispatcher(self) -> TransactionDispatcher:
        balances = self.indexer() if self.config.indexer_access_key else None
        return TransactionDispatcher(
            self.config,
            self.sessions,
            self.wallet_client_factory,
            balances,
            http_session=self.http_session,
        )

    def builder_client(self) -> BuilderClient:
        return BuilderClient(self.config.builder_api_url, session=self.http_session)

    def builder_access_key(self) -> str | None:
        identity = load_builder(self.store)
        return identity.access_key if identity is not None else None


def _mask(secret: str) -> str:
    return secret[:4] + "..." + secret[-4:] if len(secret) > 12 else "***"


def cmd_builder(ctx: CommandContext, args: argparse.Namespace) -> dict[str, Any]:
    if args.builder_command == "setup":
        identity, created = setup_builder(ctx.store, ctx.builder_client(), args.name, force=args.force)
        if not created:
            return {**identity.public_view(), "message": "Builder already configured. Use --force to recreate."}
        return {
            "privateKey": identity.private_key,
            **identity.public_view(),
            "message": "Builder configured. Back up the private key now; it is not shown again.",
        }
    if args.builder_command == "save":
        identity = load_builder(ctx.store)
        if identity is None:
            identity = BuilderIdentity(access_key=args.access_key, created_at=utcnow())
        else:
            identity.access_key = args.access_key
        save_builder(ctx.store, identity)
        return {"message": "Builder access key saved", "accessKey": _mask(args.access_key)}
    identity = load_builder(ctx.store)
    if identity is None:
        raise UsageError(
            "No builder identity stored",
            hint="Run 'polygon-agent builder setup --name <project>' or 'builder save --access-key <key>'.",
        )
    return {**identity.public_view(), "accessKey": _mask(identity.access_key)}


def cmd_wallet_create(ctx: CommandContext, args: argparse.Namespace, out: Callable[[str], None]) -> dict[str, Any]:
    flags = PermissionFlags(
        native_limit=args.native_limit,
        usdc_limit=args.usdc_limit,
        usdt_limit=args.usdt_limit,
        token_limits=args.token_limit,
        usdc_to=args.usdc_to,
        usdc_amount=args.usdc_amount,
        contracts=args.contract,
    )
    params = build_permission_params(flags)
    network = resolve_network(args.chain or ctx.config.default_chain)
    ctx.config.require("connector_url")
    access_key = args.access_key or ctx.config.access_key or ctx.builder_access_key()

    request = create_request(ctx.store, args.name, network.name, access_key)
    base = {
        **request.public_view(),
        "chainId": network.chain_id,
        "permissions": describe_permissions(params),
    }
    if args.no_wait:
        url = build_approval_url(ctx.config, request, params)
        return {
            **base,
            "url": url,
            "message": "Open the URL to approve, then run 'polygon-agent wallet import' with the ciphertext.",
        }

    timeout = args.timeout or ctx.config.callback_timeout
    server = CallbackServer(timeout=timeout, expected_request_id=request.request_id)
    try:
        url = build_approval_url(ctx.config, request, params, callback_url=server.callback_url)
        out(f"Open this URL in a browser to approve wallet '{request.wallet_name}':\n{url}\n")
        out(f"Waiting up to {timeout}s for approval...\n")
        payload = server.wait()
    finally:
        server.close()
    session = ingest_session(ctx.store, payload.ciphertext, request_id=request.request_id)
    return {**base, **session.summary(), "message": "Wallet linked. Ready for operations."}


def cmd_wallet_import(ctx: CommandContext, args: argparse.Namespace) -> dict[str, Any]:
    if not args.name and not args.rid:
        raise UsageError("Provide --name or --rid")
    ciphertext = read_ciphertext_argument(args.ciphertext)
    session = ingest_session(ctx.store, ciphertext, wallet_name=args.name, request_id=args.rid)
    return {**session.summary(), "message": "Session started. Wallet ready for operations."}


def cmd_wallet(ctx: CommandContext, args: argparse.Namespace, out: Callable[[str], None]) -> dict[str, Any]:
    if args.wallet_command == "create":
        return cmd_wallet_create(ctx, args, out)
    if args.wallet_command == "import":
        return cmd_wallet_import(ctx, args)
    if args.wallet_command == "list":
        return {"wallets": [ctx.sessions.load(name).summary() for name in ctx.sessions.list()]}
    if args.wallet_command == "address":
        return ctx.sessions.load(args.name).summary()
    if args.wallet_command == "remove":
        if not ctx.sessions.remove(args.name):
            raise WalletNotFoundError(f"Wallet not found: {args.name}")
        return {"walletName": args.name, "removed": True}
    raise UsageError(f"Unknown wallet command: {args.wallet_command}")  # pragma: no cover


def cmd_balances(ctx: CommandContext, args: argparse.Namespace) -> dict[str, Any]:
    session = ctx.sessions.load(args.wallet)
    network = resolve_network(args.chain or session.chain_id)
    balances = ctx.indexer().get_balances(session.wallet_address, network)
    return {
        "walletName": session.wallet_name,
        "walletAddress": session.wallet_address,
        "chain": network.name,
        "chainId": network.chain_id,
        "balances": [balance.to_dict() for balance in balances],
    }


def _dispatch_output(result, network, extra: Mapping[str, Any]) -> dict[str, Any]:
    output = {**extra, "chain": network.name, **result.to_dict()}
    if result.tx_hash:
        output["explorerUrl"] = network.explorer_tx_url(result.tx_hash)
    else:
        output["note"] = "Dry run. Re-run with --broadcast to submit."
    return output


def cmd_send(ctx: CommandContext, args: argparse.Namespace) -> dict[str, Any]:
    require_address(args.to, flag="--to")
    if args.symbol and args.token:
        raise UsageError("Use either --symbol or --token, not both")
    if args.token and args.decimals is None:
        raise UsageError("--token requires --decimals")

    session = ctx.sessions.load(args.wallet)
    network = resolve_network(session.chain_id)
    if args.symbol:
        token = ctx.resolver().resolve(network.chain_id, args.symbol)
    elif args.token:
        token = TokenInfo("TOKEN", require_address(args.token, flag="--token"), args.decimals)
    else:
        token = None

    if token is None or token.is_native:
        value = parse_units(args.amount, network.native_decimals, flag="--amount")
        transactions = native_send_transactions(args.to, value, direct=args.direct)
        symbol = network.native_symbol
    else:
        value = parse_units(args.amount, token.decimals, flag="--amount")
        transactions = erc20_transfer_transactions(token, args.to, value)
        symbol = token.symbol

    preference = FeePreference(prefer_native=args.fee_token is None, fee_token=args.fee_token)
    result = ctx.dispatcher().execute(
        args.wallet, network.chain_id, transactions, broadcast=args.broadcast, fee_preference=preference
    )
    return _dispatch_output(
        result,
        network,
        {"walletName": args.wallet, "to": args.to, "amount": args.amount, "symbol": symbol},
    )


def cmd_swap(ctx: CommandContext, args: argparse.Namespace) -> dict[str, Any]:
    if args.from_symbol.upper() == args.to_symbol.upper():
        raise UsageError("from and to token must be different")
    slippage = parse_slippage(args.slippage)
    if ctx.swap_quotes is None:
        raise UsageError("Swapping requires a swap quote source; none is configured")

    session = ctx.sessions.load(args.wallet)
    network = resolve_network(session.chain_id)
    resolver = ctx.resolver()
    from_token = resolver.resolve(network.chain_id, args.from_symbol)
    to_token = resolver.resolve(network.chain_id, args.to_symbol)
    amount = parse_units(args.amount, from_token.decimals, flag="--amount")

    quote = prepare_swap(
        ctx.swap_quotes, session.wallet_address, network.chain_id, from_token, to_token, amount, slippage
    )
    result = ctx.dispatcher().execute(
        args.wallet,
        network.chain_id,
        [quote.deposit_transaction],
        broadcast=args.broadcast,
        fee_preference=FeePreference(prefer_native=True),
    )
    extra: dict[str, Any] = {
        "walletName": args.wallet,
        "fromToken": from_token.symbol,
        "toToken": to_token.symbol,
        "amount": args.amount,
        "slippage": str(slippage),
        "intentId": quote.intent_id,
    }
    if result.tx_hash:
        extra["execution"] = dict(ctx.swap_quotes.execute(quote.intent_id, result.tx_hash))
    return _dispatch_output(result, network, extra)


def cmd_registry(ctx: CommandContext, args: argparse.Namespace) -> dict[str, Any]:
    session = ctx.sessions.load(args.wallet)
    network = resolve_network(session.chain_id)
    value = parse_units(args.value, network.native_decimals, flag="--value") if args.value else 0
    transactions = registry_call_transactions(args.registry, args.data, value)
    result = ctx.dispatcher().execute(
        args.wallet,
        network.chain_id,
        transactions,
        broadcast=args.broadcast,
        fee_preference=FeePreference(prefer_native=True),
    )
    return _dispatch_output(
        result,
        network,
        {"walletName": args.wallet, "registry": transactions[0].to, "value": format_units(value)},
    )


def _configure_logging(config: AgentConfig) -> None:
    logging.basicConfig(level=config.log_level, format=LOG_FORMAT, stream=sys.stderr)
    if config.debug_fee:
        logging.getLogger("polygon_agent.fees").setLevel(logging.DEBUG)


def main(
    argv: Sequence[str] | None = None,
    *,
    wallet_client_factory: WalletClientFactory | None = None,
    swap_quotes: SwapQuoteSource | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    try:
        parser = build_parser()
        args = parser.parse_args(argv)
        config = load_config(
            config_path=args.config,
            env=env,
            overrides={"home": args.home, "log_level": args.log_level},
        )
        _configure_logging(config)
        observer = FileHttpObserver(config.resolved_fetch_log_path) if config.debug_fetch else None
        ctx = CommandContext(
            config=config,
            store=CredentialStore(config.home, passphrase=config.store_passphrase),
            http_session=build_http_session(observer),
            wallet_client_factory=wallet_client_factory,
            swap_quotes=swap_quotes,
        )

        def out(text: str) -> None:
            sys.stderr.write(text)
            sys.stderr.flush()

        if args.command == "builder":
            result = cmd_builder(ctx, args)
        elif args.command == "wallet":
            result = cmd_wallet(ctx, args, out)
        elif args.command == "balances":
            result = cmd_balances(ctx, args)
        elif args.command == "send":
            result = cmd_send(ctx, args)
        elif args.command == "swap":
            result = cmd_swap(ctx, args)
        elif args.command == "registry":
            result = cmd_registry(ctx, args)
        else:  # pragma: no cover - argparse enforces choices
            raise UsageError(f"Unknown command: {args.command}")
    except AgentError as exc:
        logger.debug("Command failed", exc_info=True)
        print(json.dumps(exc.to_dict(), indent=2), file=sys.stderr)
        return 1
    except KeyboardInterrupt:  # pragma: no cover - interactive use
        logger.info("Interrupted by user")
        return 1

    print(json.dumps({"ok": True, **result}, indent=2))
    return 0


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
