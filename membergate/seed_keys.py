"""
Generate access or boost keys and print their codes.

  membergate-seed-keys access --count 20 --duration 30D
  membergate-seed-keys boost --count 5 --scope daily --amount 20 --temporary-days 7
"""

import argparse
import logging
import sys

from membergate.models.access_key import BoostScope
from membergate.services.boost_service import BoostService
from membergate.services.database import get_session_factory
from membergate.services.errors import MembergateError
from membergate.services.key_codes import parse_duration_code
from membergate.services.license_service import LicenseService
from membergate.services.quota_service import QuotaService

log = logging.getLogger("seed_keys")


def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Generate membership keys")
    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = p.add_subparsers(dest="kind", required=True)

    access = sub.add_parser("access", help="Access keys that extend membership")
    access.add_argument("--count", type=int, default=1)
    access.add_argument("--duration", default="30D", help="Grant duration: 12H, 7D, 1M, 1Y")
    access.add_argument("--max-uses", type=int, default=1, help="0 for unlimited")
    access.add_argument("--prefix", default="XY")
    access.add_argument("--description")

    boost = sub.add_parser("boost", help="Boost keys that raise the AI quota")
    boost.add_argument("--count", type=int, default=1)
    boost.add_argument("--scope", choices=[s.value for s in BoostScope], default="daily")
    boost.add_argument("--amount", type=int, required=True)
    boost.add_argument("--temporary-days", type=int, help="Make the boost temporary")
    boost.add_argument("--activation-days", type=int, help="Days left to activate the key")
    boost.add_argument("--max-uses", type=int, default=1, help="0 for unlimited")
    boost.add_argument("--prefix", default="AI")
    boost.add_argument("--description")
    return p.parse_args(argv)


def generate(session, args) -> list[str]:
    max_uses = args.max_uses or None
    if args.kind == "access":
        keys = LicenseService().generate_access_keys(
            session,
            args.count,
            parse_duration_code(args.duration),
            max_uses=max_uses,
            prefix=args.prefix,
            description=args.description,
        )
    else:
        keys = BoostService(QuotaService()).generate_boost_keys(
            session,
            args.count,
            BoostScope(args.scope),
            args.amount,
            is_temporary=args.temporary_days is not None,
            temporary_duration_days=args.temporary_days,
            max_uses=max_uses,
            activation_deadline_days=args.activation_days,
            prefix=args.prefix,
            description=args.description,
        )
    return [key.code for key in keys]


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    with get_session_factory()() as session:
        try:
            codes = generate(session, args)
            session.commit()
        except (MembergateError, ValueError) as exc:
            session.rollback()
            log.error("Key generation failed: %s", exc)
            return 1

    log.info("Generated %d %s keys", len(codes), args.kind)
    for code in codes:
        print(code)
    return 0


if __name__ == "__main__":
    sys.exit(main())
