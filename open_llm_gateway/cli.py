from __future__ import annotations

import argparse
import sys
from typing import Any, Callable, cast

from open_llm_gateway.config import GatewayConfigurationError, load_gateway_config
from open_llm_gateway.gateway.auth import issue_token
from open_llm_gateway.resolver import ModelResolver
from open_llm_gateway.settings import get_settings

DEFAULT_TOKEN_TTL_SECONDS = 3600


def _parse_claim(raw: str) -> tuple[str, Any]:
    key, sep, value = raw.partition("=")
    if not sep or not key.strip():
        raise argparse.ArgumentTypeError(f"Expected key=value, got '{raw}'.")
    if key.strip() == "exp":
        raise argparse.ArgumentTypeError("'exp' is set from --ttl.")
    return key.strip(), value


def cmd_mint_token(args: argparse.Namespace) -> int:
    settings = get_settings()
    secret = (settings.gateway_shared_secret or "").strip()
    if not secret:
        print("GATEWAY_SHARED_SECRET is not set.", file=sys.stderr)
        return 1
    if args.ttl <= 0:
        print("--ttl must be positive.", file=sys.stderr)
        return 1
    claims = dict(args.claim or [])
    print(issue_token(secret, ttl_seconds=args.ttl, claims=claims))
    return 0


def cmd_models(args: argparse.Namespace) -> int:
    path = args.path or get_settings().model_profiles_path
    try:
        resolver = ModelResolver.from_config(load_gateway_config(path))
    except GatewayConfigurationError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    for model_key, profile in sorted(resolver.profiles.items()):
        marker = "*" if model_key == resolver.default_model else " "
        candidates = ",".join(profile.candidate_ids)
        print(
            f"{marker} {model_key}\t{profile.dialect.value}\t{candidates}\t"
            f"{profile.endpoint_template}"
        )
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "open_llm_gateway.main:app",
        host=args.host or settings.host,
        port=args.port or settings.port,
        reload=False,
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="open-llm-gateway",
        description="Run and operate the chat translation gateway.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_cmd = subparsers.add_parser("serve", help="Run the HTTP gateway.")
    serve_cmd.add_argument("--host", default=None)
    serve_cmd.add_argument("--port", type=int, default=None)
    serve_cmd.set_defaults(handler=cmd_serve)

    token_cmd = subparsers.add_parser(
        "mint-token", help="Print a signed X-Auth-Token for the shared secret."
    )
    token_cmd.add_argument("--ttl", type=int, default=DEFAULT_TOKEN_TTL_SECONDS)
    token_cmd.add_argument(
        "--claim",
        action="append",
        type=_parse_claim,
        help="Extra claim as key=value; repeatable.",
    )
    token_cmd.set_defaults(handler=cmd_mint_token)

    models_cmd = subparsers.add_parser(
        "models", help="List resolved model profiles from the profile table."
    )
    models_cmd.add_argument("--path", default=None)
    models_cmd.set_defaults(handler=cmd_models)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handler = cast(Callable[[argparse.Namespace], int], args.handler)
    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
