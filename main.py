#!/usr/bin/env python3
"""
hdkrecover — IV & path recovery for PlayStation Home content.

Usage:
    python main.py crypt decrypt -i file.enc -o file.xml -k <hex key>
    python main.py crypt encrypt -i file.xml -o file.enc -k <hex key> --iv 0000000000000005
    python main.py crypt auto    -i file.bin -o file.out -k <hex key>
    python main.py map -i extracted/ --full
    python main.py map -i object_dir/ --scope object --uuid <object uuid>
"""

APP_VERSION = "1.0.0"

import sys
import logging
import argparse
import binascii


def _parse_hex(text: str, what: str) -> bytes:
    try:
        return binascii.unhexlify(text.strip().replace(" ", ""))
    except (binascii.Error, ValueError):
        raise argparse.ArgumentTypeError(f"{what} must be hex, got {text!r}")


def _build_manager(args):
    from hdkrecover.config import load_config
    from hdkrecover.manager import RecoveryManager

    search_config, map_config = load_config(args.config)
    if args.workers is not None:
        search_config.workers = args.workers
        map_config.workers = args.workers
    return RecoveryManager(search_config, map_config)


def crypt_mode(args) -> int:
    from hdkrecover.keystream import RecoveryStatus

    manager = _build_manager(args)
    key = _parse_hex(args.key, "key")

    if args.action == "encrypt":
        if not args.iv:
            print("❌ encrypt needs --iv")
            return 1
        manager.encrypt_file(args.input, args.output, key, _parse_hex(args.iv, "IV"),
                             overwrite=args.force)
        print(f"✅ Encrypted {args.input} -> {args.output}")
        return 0

    if args.action == "decrypt":
        result = manager.decrypt_file(args.input, args.output, key, args.type,
                                      overwrite=args.force)
    else:
        iv = _parse_hex(args.iv, "IV") if args.iv else None
        auto_result = manager.auto_file(args.input, args.output, key, iv,
                                        overwrite=args.force)
        if auto_result.action == "encrypt":
            print(f"✅ Input looked like {auto_result.detected_type.value} plaintext, encrypted")
            print(f"   IV: {auto_result.iv.hex().upper()}")
            print(f"   Output: {args.output}")
            return 0
        result = auto_result.recovery

    if not result.ok:
        if result.status is RecoveryStatus.INPUT_TOO_SHORT:
            print(f"❌ Input too short to test {', '.join(t.value for t in result.types_tried)}")
        else:
            print(f"❌ Could not determine plaintext type "
                  f"({result.candidates_tried:,} candidates tried)")
        return 2

    print(f"✅ Decrypted as {result.matched_type.value}")
    print(f"   IV: {result.iv.hex().upper()}")
    if result.segment_count is not None:
        print(f"   Segments: {result.segment_count}")
    print(f"   Output: {args.output}")
    return 0


def map_mode(args) -> int:
    manager = _build_manager(args)
    harvest = False if args.no_harvest else None

    session = manager.map_directory(
        args.input, args.output,
        mode="full" if args.full else "fast",
        scope=args.scope,
        uuid=args.uuid,
        harvest=harvest,
        overwrite=args.force,
    )

    print(f"Mapping files to: {session.output_dir}")
    print(f"Mapped {session.mapping.mapped_count} files.")
    not_found = session.not_found
    if not_found:
        print(f"{len(not_found)} files could not be mapped:")
        for entry in not_found:
            print(f" - {entry.rel_path}")

    if args.report:
        if args.report.lower().endswith(".csv"):
            manager.export_report_csv(args.report)
        else:
            manager.export_report_json(args.report)
        print(f"  Report: {args.report}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Recover IVs of encrypted Home payloads and original paths of hash-named entries.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {APP_VERSION}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--config", default=None, help="JSON file with search bounds")
    parser.add_argument("--workers", type=int, default=None,
                        help="Worker processes (0 = auto, 1 = in-process)")
    parser.add_argument("--force", action="store_true", help="Overwrite existing outputs")
    sub = parser.add_subparsers(dest="command", required=True)

    crypt = sub.add_parser("crypt", help="Cryptographic operations")
    crypt.add_argument("action", choices=("encrypt", "decrypt", "auto"))
    crypt.add_argument("-i", "--input", required=True, help="Input file")
    crypt.add_argument("-o", "--output", required=True, help="Output file")
    crypt.add_argument("-k", "--key", required=True, help="Blowfish key (hex)")
    crypt.add_argument("-t", "--type", default="all",
                       help="Plaintext type to search (default: all)")
    crypt.add_argument("--iv", default=None, help="IV for encryption (hex)")

    mapper = sub.add_parser("map", help="Map hash-named files back to their paths")
    mapper.add_argument("-i", "--input", required=True, help="Input directory to map")
    mapper.add_argument("-o", "--output", default=None,
                        help="Output directory (default: <input>.mapped)")
    mapper.add_argument("-f", "--full", action="store_true",
                        help="Use the full template set (slower, finds more)")
    mapper.add_argument("-u", "--uuid", default=None,
                        help="Object UUID (objects only, never for scenes)")
    mapper.add_argument("--scope", choices=("scene", "object"), default=None,
                        help="Template scope (default: object if --uuid given, else scene)")
    mapper.add_argument("--no-harvest", action="store_true",
                        help="Do not scan file contents for path references")
    mapper.add_argument("--report", default=None, help="Write a .json or .csv report")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    from hdkrecover.errors import ConfigurationError

    if args.command == "map" and args.scope is None:
        args.scope = "object" if args.uuid else "scene"

    try:
        if args.command == "crypt":
            return crypt_mode(args)
        return map_mode(args)
    except ConfigurationError as e:
        print(f"❌ Configuration error: {e}")
        return 1
    except argparse.ArgumentTypeError as e:
        print(f"❌ {e}")
        return 1
    except (OSError, ValueError) as e:
        print(f"❌ Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
