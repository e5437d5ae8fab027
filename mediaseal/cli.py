"""
mediaseal CLI — encrypted media uploads and retrieval.

Commands:
  mediaseal content-id   - Derive a content id from a track id and owner address
  mediaseal track-id     - Derive a track id from MBID, IP asset or title/artist/album
  mediaseal encrypt      - Seal a file with the local key service
  mediaseal decrypt      - Open a sealed file with the local key service
  mediaseal inspect      - Show the header of a sealed file
  mediaseal upload       - Upload a file through the remote storage/registry services
  mediaseal fetch        - Fetch a piece from the gateway (and decrypt it)
  mediaseal index        - List locally recorded registrations
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path


def _load_config(args: argparse.Namespace):
    from mediaseal.config import load_config
    from mediaseal.errors import ConfigError

    try:
        return load_config(getattr(args, "config", None))
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


def _key_path(args: argparse.Namespace, config) -> Path:
    if getattr(args, "key_file", None):
        return Path(args.key_file).expanduser()
    return config.data_path / "seal.key"


def _load_master_key(key_path: Path, create: bool = False) -> bytes:
    """Load the local key service master key (hex), optionally generating it.

    Stored at ~/.mediaseal/seal.key (mode 600).
    """
    if key_path.is_file():
        try:
            return bytes.fromhex(key_path.read_text().strip())
        except ValueError:
            print(f"Error: Invalid key file: {key_path}", file=sys.stderr)
            sys.exit(1)
    if not create:
        print(f"Error: Key file not found: {key_path}", file=sys.stderr)
        sys.exit(1)

    from mediaseal import SEAL_KEY_SIZE

    key = os.urandom(SEAL_KEY_SIZE)
    key_path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(str(key_path), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(key.hex())
    print(f"Generated new key at {key_path}", file=sys.stderr)
    return key


def _policy(args: argparse.Namespace, content_id: str):
    from mediaseal.seal.keys import AccessPolicy

    contract = getattr(args, "policy_contract", None)
    if contract:
        return AccessPolicy.content_access(contract, content_id, chain=args.chain)
    return AccessPolicy(chain=args.chain)


def _add_policy_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--policy-contract",
        help="Access contract address (canAccess(user, contentId) gates decryption)",
    )
    parser.add_argument("--chain", default="baseSepolia", help="Chain the policy is evaluated on")


def _add_track_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--title", default="", help="Track title")
    parser.add_argument("--artist", default="", help="Track artist")
    parser.add_argument("--album", default="", help="Album")
    parser.add_argument("--mbid", help="MusicBrainz recording id")
    parser.add_argument("--ip-id", help="IP asset address")


def _track_id(args: argparse.Namespace, path: str | None = None) -> tuple[str, dict[str, str]]:
    from mediaseal.seal.addressing import compute_track_identifier, infer_track_metadata

    meta = {"title": args.title, "artist": args.artist, "album": args.album}
    if path and not (args.title or args.artist):
        inferred = infer_track_metadata(path)
        meta = {k: meta[k] or inferred[k] for k in meta}
    track_id = compute_track_identifier(
        meta["title"], meta["artist"], meta["album"], mbid=args.mbid, ip_id=args.ip_id,
    )
    if args.mbid:
        meta["mbid"] = args.mbid
    if args.ip_id:
        meta["ip_id"] = args.ip_id
    return track_id, meta


def cmd_content_id(args: argparse.Namespace) -> None:
    """Print the content id for (track id, owner)."""
    from mediaseal.errors import InvalidInput
    from mediaseal.seal.addressing import compute_content_identifier

    try:
        print(compute_content_identifier(args.track_id, args.owner))
    except InvalidInput as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


def cmd_track_id(args: argparse.Namespace) -> None:
    """Print the track id for the given metadata."""
    from mediaseal.errors import InvalidInput

    try:
        track_id, meta = _track_id(args, args.path)
    except InvalidInput as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    print(track_id)
    if args.path:
        print(f"  title:  {meta['title']}", file=sys.stderr)
        print(f"  artist: {meta['artist']}", file=sys.stderr)


def cmd_encrypt(args: argparse.Namespace) -> None:
    """Seal a file with the local key service."""
    from mediaseal.errors import MediaSealError
    from mediaseal.seal.crypto import encrypt_content
    from mediaseal.seal.keys import LocalKeyService

    path = Path(args.path)
    if not path.is_file():
        print(f"Error: File not found: {path}", file=sys.stderr)
        sys.exit(1)

    config = _load_config(args)
    key_service = LocalKeyService(_load_master_key(_key_path(args, config), create=True))
    policy = _policy(args, args.content_id)

    try:
        sealed = asyncio.run(
            encrypt_content(path.read_bytes(), args.content_id, policy, key_service)
        )
    except MediaSealError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    out_path = Path(args.output) if args.output else path.with_suffix(path.suffix + ".sealed")
    out_path.write_bytes(sealed.blob)
    print(f"Encrypted {path} -> {out_path} ({sealed.size} bytes)")


def cmd_decrypt(args: argparse.Namespace) -> None:
    """Open a sealed file with the local key service."""
    from mediaseal.errors import MediaSealError
    from mediaseal.seal.crypto import decrypt_content
    from mediaseal.seal.keys import LocalKeyService

    path = Path(args.path)
    if not path.is_file():
        print(f"Error: File not found: {path}", file=sys.stderr)
        sys.exit(1)

    config = _load_config(args)
    key_service = LocalKeyService(_load_master_key(_key_path(args, config)))
    policy = _policy(args, args.content_id)

    try:
        plaintext = asyncio.run(
            decrypt_content(path.read_bytes(), args.content_id, policy, key_service)
        )
    except MediaSealError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    if args.output:
        out_path = Path(args.output)
    elif path.suffix == ".sealed":
        out_path = path.with_suffix("")
    else:
        out_path = path.with_suffix(".dec")

    out_path.write_bytes(plaintext)
    print(f"Decrypted {path} -> {out_path} ({len(plaintext)} bytes)")


def cmd_inspect(args: argparse.Namespace) -> None:
    """Decode and print a sealed file's header."""
    from mediaseal._format.reader import ContentReader
    from mediaseal.errors import MalformedHeader

    path = Path(args.path)
    if not path.is_file():
        print(f"Error: File not found: {path}", file=sys.stderr)
        sys.exit(1)
    try:
        header = ContentReader.parse(path.read_bytes(), strict=False)
    except MalformedHeader as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    print(json.dumps(header.to_dict(), indent=2))


def _remote_services(config):
    from mediaseal.rpc import (
        JsonRpcClient,
        RemoteKeyService,
        RemoteRegistrar,
    )

    missing = [
        name for name in ("storage_rpc_url", "keys_rpc_url", "registry_rpc_url")
        if not getattr(config, name)
    ]
    if missing:
        print(
            f"Error: Missing {', '.join(missing)} (set in config.toml or MEDIASEAL_* env)",
            file=sys.stderr,
        )
        sys.exit(1)

    def client(url: str, timeout: float) -> JsonRpcClient:
        return JsonRpcClient(url, config.rpc_token, timeout)

    storage_rpc = client(config.storage_rpc_url, config.upload_timeout)
    key_service = RemoteKeyService(client(config.keys_rpc_url, config.fetch_timeout))
    registrar = RemoteRegistrar(client(config.registry_rpc_url, config.register_timeout))
    return storage_rpc, key_service, registrar


def cmd_upload(args: argparse.Namespace) -> None:
    """Enqueue an upload and run the queue until it is idle."""
    from mediaseal.errors import InvalidInput
    from mediaseal.jobs import Attachment, JobQueue, UploadStep
    from mediaseal.pipeline import UploadPipeline
    from mediaseal.rpc import RemoteStorageClient
    from mediaseal.seal.addressing import compute_content_identifier
    from mediaseal.storage import ContentLocator, StorageClientCache
    from mediaseal.store import ContentIndex

    path = Path(args.path)
    if not path.is_file():
        print(f"Error: File not found: {path}", file=sys.stderr)
        sys.exit(1)

    config = _load_config(args)
    try:
        track_id, meta = _track_id(args, str(path))
        content_id = compute_content_identifier(track_id, args.owner)
    except InvalidInput as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    storage_rpc, key_service, registrar = _remote_services(config)
    clients = StorageClientCache(
        lambda signer: RemoteStorageClient(storage_rpc, signer, with_cdn=config.with_cdn)
    )
    policy = None if args.plaintext else _policy(args, content_id)
    attachments = [Attachment("cover", args.cover, "image")] if args.cover else []

    async def _run():
        pipeline = UploadPipeline(
            clients, registrar, key_service, config,
            index=ContentIndex(config.data_path),
        )
        queue = JobQueue(worker=pipeline.run, data_dir=config.data_path)
        job_id = queue.enqueue(
            str(path),
            track_identifier=track_id,
            owner=args.owner,
            encrypted=not args.plaintext,
            policy=policy,
            metadata=meta,
            dataset_id=args.dataset_id,
            attachments=attachments,
        )
        await queue.wait_idle()
        return queue.acknowledge(job_id)

    job = asyncio.run(_run())

    if job.step is not UploadStep.DONE:
        print(f"FAIL: {job.error}", file=sys.stderr)
        sys.exit(1)

    print(f"Uploaded {path}")
    print(f"  content id: {job.content_identifier}")
    print(f"  piece id:   {job.piece_id}")
    print(f"  tx:         {job.tx_hash}")
    locator = ContentLocator(job.piece_id, job.dataset_owner, config.network, config.gateway_url)
    print(f"  url:        {locator.url()}")
    for attachment in job.attachments:
        status = attachment.piece_id if attachment.piece_id else attachment.error
        print(f"  {attachment.name}: {attachment.status} {status or ''}".rstrip())


def cmd_fetch(args: argparse.Namespace) -> None:
    """Fetch a piece from the gateway, decrypting unless --plaintext."""
    from mediaseal.errors import MediaSealError
    from mediaseal.retrieval import RetrievalPipeline
    from mediaseal.rpc import JsonRpcClient, RemoteKeyService
    from mediaseal.seal.keys import LocalKeyService
    from mediaseal.storage import ContentLocator

    config = _load_config(args)
    locator = ContentLocator(
        args.piece_id,
        args.dataset_owner,
        args.network or config.network,
        config.gateway_url,
    )

    key_service = None
    if not args.plaintext:
        if not args.content_id:
            print("Error: --content-id is required unless --plaintext", file=sys.stderr)
            sys.exit(1)
        if config.keys_rpc_url and not args.key_file:
            key_service = RemoteKeyService(
                JsonRpcClient(config.keys_rpc_url, config.rpc_token, config.fetch_timeout)
            )
        else:
            key_service = LocalKeyService(_load_master_key(_key_path(args, config)))

    retrieval = RetrievalPipeline(key_service, timeout=config.fetch_timeout)
    try:
        if args.plaintext:
            data = asyncio.run(retrieval.fetch_plaintext(locator))
        else:
            data = asyncio.run(retrieval.fetch_and_decrypt(
                locator, args.content_id, _policy(args, args.content_id),
            ))
    except MediaSealError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    output = args.output or args.piece_id[:16]
    if ".." in Path(output).parts:
        print("Error: Output path must not contain '..' (path traversal)", file=sys.stderr)
        sys.exit(1)
    Path(output).write_bytes(data)
    print(f"Fetched {locator.url()} -> {output} ({len(data)} bytes)")


def cmd_index(args: argparse.Namespace) -> None:
    """List locally recorded registrations."""
    from mediaseal.store import ContentIndex

    config = _load_config(args)
    entries = ContentIndex(config.data_path).list()

    if not entries:
        print("Content index is empty.")
        return

    print(f"Content index: {len(entries)} item(s)\n")
    for entry in entries:
        line = f"  {entry['content_id'][:18]}...  piece={entry.get('piece_id', '')[:16]}..."
        if entry.get("tx_hash"):
            line += f"  tx={entry['tx_hash'][:12]}..."
        line += "  sealed" if entry.get("algorithm") else "  plain"
        if entry.get("recorded_at"):
            line += f"  {entry['recorded_at'][:19]}"
        print(line)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="mediaseal",
        description="Encrypted, content-addressed media uploads to Filecoin.",
    )
    from mediaseal import __version__
    parser.add_argument("--version", action="version", version=f"mediaseal {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--config", help="Path to config.toml (default ~/.mediaseal/config.toml)")
    sub = parser.add_subparsers(dest="command")

    # content-id
    p_cid = sub.add_parser("content-id", help="Derive a content id")
    p_cid.add_argument("track_id", help="bytes32 track id (0x + 64 hex)")
    p_cid.add_argument("owner", help="Owner address (0x + 40 hex)")

    # track-id
    p_tid = sub.add_parser("track-id", help="Derive a track id")
    p_tid.add_argument("path", nargs="?", help="Infer title/artist from an 'Artist - Title' filename")
    _add_track_args(p_tid)

    # encrypt
    p_enc = sub.add_parser("encrypt", help="Seal a file with the local key service")
    p_enc.add_argument("path", help="File to encrypt")
    p_enc.add_argument("--content-id", required=True, help="Content id the key is bound to")
    p_enc.add_argument("-o", "--output", help="Output path (default: <file>.sealed)")
    p_enc.add_argument("--key-file", help="Local master key (default ~/.mediaseal/seal.key)")
    _add_policy_args(p_enc)

    # decrypt
    p_dec = sub.add_parser("decrypt", help="Open a sealed file with the local key service")
    p_dec.add_argument("path", help="Sealed file")
    p_dec.add_argument("--content-id", required=True, help="Expected content id")
    p_dec.add_argument("-o", "--output", help="Output path")
    p_dec.add_argument("--key-file", help="Local master key (default ~/.mediaseal/seal.key)")
    _add_policy_args(p_dec)

    # inspect
    p_ins = sub.add_parser("inspect", help="Show the header of a sealed file")
    p_ins.add_argument("path", help="Sealed file")

    # upload
    p_up = sub.add_parser("upload", help="Upload a file and register it on-chain")
    p_up.add_argument("path", help="Media file")
    p_up.add_argument("--owner", required=True, help="Owner/signer address")
    p_up.add_argument("--plaintext", action="store_true", help="Upload without encryption")
    p_up.add_argument("--dataset-id", help="Reuse an existing dataset (no provider fallback)")
    p_up.add_argument("--cover", help="Cover art to upload alongside")
    _add_track_args(p_up)
    _add_policy_args(p_up)

    # fetch
    p_fetch = sub.add_parser("fetch", help="Fetch a piece from the gateway")
    p_fetch.add_argument("piece_id", help="Piece id")
    p_fetch.add_argument("--dataset-owner", help="Dataset owner (required for Filecoin piece ids)")
    p_fetch.add_argument("--network", choices=["mainnet", "calibration"])
    p_fetch.add_argument("--content-id", help="Content id (required to decrypt)")
    p_fetch.add_argument("--plaintext", action="store_true", help="Piece is not encrypted")
    p_fetch.add_argument("--key-file", help="Use the local key service with this key")
    p_fetch.add_argument("-o", "--output", help="Output path")
    _add_policy_args(p_fetch)

    # index
    sub.add_parser("index", help="List locally recorded registrations")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not args.command:
        parser.print_help()
        sys.exit(0)

    commands = {
        "content-id": cmd_content_id,
        "track-id": cmd_track_id,
        "encrypt": cmd_encrypt,
        "decrypt": cmd_decrypt,
        "inspect": cmd_inspect,
        "upload": cmd_upload,
        "fetch": cmd_fetch,
        "index": cmd_index,
    }

    commands[args.command](args)


if __name__ == "__main__":
    main()
