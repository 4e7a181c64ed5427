#!/usr/bin/env python
from __future__ import annotations

import argparse
import asyncio

from profile_audit.application import build_audit_service
from profile_audit.core.logger import configure_logging
from profile_audit.core.settings import get_settings


async def _run(args: argparse.Namespace) -> None:
    service = build_audit_service(get_settings())
    try:
        service.cache.restore()
        audit = await service.fetch_reviews(
            args.subject,
            keyword=args.keyword,
            place_id=args.place_id,
            depth=args.depth,
        )
    finally:
        await service.shutdown()

    analysis = audit.analysis
    print(f"{len(audit.reviews)} review(s) collected for {args.subject}")
    print(f"average rating {analysis.avg_rating}, owner response rate {analysis.response_rate}%")
    for star in range(5, 0, -1):
        print(f"  {star}★ {analysis.rating_distribution.get(star, 0)}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Collect Google reviews for a business into the audit cache")
    parser.add_argument("--subject", required=True, help="Business id used as cache key")
    parser.add_argument("--keyword", default=None, help="Business name as searched on Google")
    parser.add_argument("--place-id", default=None, help="Google place id, preferred over keyword")
    parser.add_argument("--depth", type=int, default=100, help="Number of reviews to request")
    args = parser.parse_args()
    if not (args.keyword or args.place_id):
        parser.error("--keyword or --place-id is required")

    settings = get_settings()
    configure_logging(settings.log_level, settings.logs_path or None)
    asyncio.run(_run(args))


if __name__ == "__main__":
    main()
