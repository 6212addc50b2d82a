#!/usr/bin/env python3
"""memgate CLI - command line interface for the context gateway.

Usage:
    memgate server                       Start the REST API server
    memgate validate-manifest FILE       Check a capability manifest
    memgate validate-policies FILE       Check a policy document
    memgate resolve --memory FILE --manifest FILE --schema FILE
                                         Resolve a requested schema offline
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from datetime import timedelta
from typing import Any, Dict, List


def _load_json(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as handle:
        return json.load(handle)


def _memory_records(path: str) -> List[Dict[str, Any]]:
    payload = _load_json(path)
    if isinstance(payload, dict):
        payload = payload.get("entries", [])
    return list(payload)


def cmd_server(args):
    """Start the REST API server."""
    from memgate.api.server import serve, set_gateway
    from memgate.configs.base import GatewayConfig
    from memgate.core.gateway import ContextGateway
    from memgate.stores.memory_store import InMemoryMemoryStore

    if args.manifest:
        os.environ["MEMGATE_MANIFEST_PATH"] = args.manifest
    if args.policies:
        os.environ["MEMGATE_POLICY_PATH"] = args.policies
    store = InMemoryMemoryStore()
    if args.memory:
        store.load_entries(_memory_records(args.memory))
    set_gateway(ContextGateway.from_config(GatewayConfig.from_env(), memory_store=store))
    serve(args.host, args.port)


def cmd_validate_manifest(args):
    """Validate a manifest document and summarize it."""
    from memgate.stores.manifest import ManifestRegistry

    snapshot = ManifestRegistry.from_file(args.file).snapshot()
    if args.json:
        print(json.dumps({"version": snapshot.version, "types": sorted(snapshot.types)}, indent=2))
        return
    print(f"Manifest OK: version={snapshot.version} types={len(snapshot)}")
    for type_id in sorted(snapshot.types):
        aliases = sorted(snapshot.types[type_id].aliases)
        print(f"  {type_id}" + (f"  aliases: {', '.join(aliases)}" if aliases else ""))


def cmd_validate_policies(args):
    """Validate a policy document and summarize it."""
    from memgate.core.restrictions import known_kinds
    from memgate.stores.policy_store import PolicyStore

    snapshot = PolicyStore.from_file(args.file).snapshot()
    unknown = sorted(
        {
            rule.kind
            for policy in snapshot.policies.values()
            for rule in policy.restrictions
            if rule.kind not in known_kinds()
        }
    )
    if args.json:
        print(json.dumps({"version": snapshot.version, "policies": len(snapshot), "unknown_kinds": unknown}, indent=2))
    else:
        print(f"Policies OK: version={snapshot.version} policies={len(snapshot)}")
        for (agent_id, intent), policy in sorted(snapshot.policies.items()):
            mode = "auto" if policy.auto_approve else "manual"
            print(f"  {agent_id} / {intent}: {', '.join(sorted(policy.required_scopes))} [{mode}]")
        if unknown:
            print(f"Unknown restriction kinds: {', '.join(unknown)}")
    if unknown:
        sys.exit(2)


def cmd_resolve(args):
    """Resolve a requested schema against a memory file, without a server."""
    from memgate.configs.base import ResolverConfig
    from memgate.core.resolver import FieldResolver
    from memgate.core.types import Grant, ResolutionStatus, Sensitivity, utcnow
    from memgate.embeddings.comparator import EmbeddingComparator, create_embedder
    from memgate.stores.manifest import ManifestRegistry
    from memgate.stores.memory_store import InMemoryMemoryStore

    store = InMemoryMemoryStore()
    store.load_entries(_memory_records(args.memory))
    manifest = ManifestRegistry.from_file(args.manifest) if args.manifest else ManifestRegistry()
    comparator = None if args.no_semantic else EmbeddingComparator(create_embedder("simple", {}))
    now = utcnow()
    grant = Grant(
        grant_id="cli",
        agent_id="cli",
        user_id=args.user_id,
        intent="cli_resolve",
        scopes=frozenset(args.scope or ["*"]),
        issued_at=now,
        expires_at=now + timedelta(minutes=5),
        sensitivity_ceiling=Sensitivity.parse(args.max_sensitivity),
    )
    resolver = FieldResolver(store, manifest, comparator=comparator, config=ResolverConfig())
    try:
        result = resolver.resolve(
            args.user_id,
            _load_json(args.schema),
            _load_json(args.aliases) if args.aliases else None,
            grant,
            min_confidence=args.min_confidence,
        )
    finally:
        resolver.close()

    if args.json:
        print(json.dumps(result.to_dict(), indent=2, default=str))
        return
    print(f"Status: {result.status.value}\n")
    for entry in result.entries:
        stage = entry.match_stage.value if entry.match_stage else "-"
        print(f"  {entry.requested_key} <- {entry.matched_canonical_type_id} [{stage} {entry.confidence:.2f}]")
        if entry.status == ResolutionStatus.NEEDS_CONFIRMATION:
            print(f"    needs confirmation: {json.dumps(entry.candidate, default=str)}")
        else:
            print(f"    {json.dumps(entry.value, default=str)}")
    if result.filtered:
        print(f"\nFiltered: {', '.join(result.filtered)}")
    if result.missing:
        print(f"Missing: {', '.join(result.missing)}")


def main():
    parser = argparse.ArgumentParser(
        prog="memgate",
        description="memgate - intent-scoped access to user memory for AI agents",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    memgate server --manifest manifest.json --policies policies.json
    memgate validate-policies policies.json
    memgate resolve --memory memory.json --manifest manifest.json --schema form.json
        """,
    )
    from memgate import __version__

    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Server command
    p_server = subparsers.add_parser("server", help="Start REST API server")
    p_server.add_argument("--host", default="127.0.0.1", help="Host to bind")
    p_server.add_argument("--port", "-p", type=int, default=8200, help="Port")
    p_server.add_argument("--manifest", help="Manifest JSON file")
    p_server.add_argument("--policies", help="Policy JSON file")
    p_server.add_argument("--memory", help="Memory entries JSON file to preload")

    # Validation commands
    p_manifest = subparsers.add_parser("validate-manifest", help="Validate a manifest document")
    p_manifest.add_argument("file", help="Manifest JSON file")
    p_manifest.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    p_policies = subparsers.add_parser("validate-policies", help="Validate a policy document")
    p_policies.add_argument("file", help="Policy JSON file")
    p_policies.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    # Resolve command
    p_resolve = subparsers.add_parser("resolve", help="Resolve a schema against a memory file")
    p_resolve.add_argument("--memory", "-m", required=True, help="Memory entries JSON file")
    p_resolve.add_argument("--manifest", help="Manifest JSON file")
    p_resolve.add_argument("--schema", "-s", required=True, help="Requested schema JSON file")
    p_resolve.add_argument("--aliases", help="Agent aliases JSON file")
    p_resolve.add_argument("--user-id", "-u", default="default", help="User ID")
    p_resolve.add_argument("--scope", action="append", help="Grant scope (repeatable, default '*')")
    p_resolve.add_argument("--max-sensitivity", default="business", help="Sensitivity ceiling")
    p_resolve.add_argument("--min-confidence", type=float, default=None, help="Confirmation threshold")
    p_resolve.add_argument("--no-semantic", action="store_true", help="Disable the semantic stage")
    p_resolve.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    commands = {
        "server": cmd_server,
        "validate-manifest": cmd_validate_manifest,
        "validate-policies": cmd_validate_policies,
        "resolve": cmd_resolve,
    }

    handler = commands.get(args.command)
    if handler:
        try:
            handler(args)
        except KeyboardInterrupt:
            print("\nAborted.")
            sys.exit(1)
        except Exception as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
