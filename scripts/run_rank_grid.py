#!/usr/bin/env python
from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path

from profile_audit.application import build_audit_service
from profile_audit.core.logger import configure_logging
from profile_audit.core.schema import GRID_SIZES, RADIUS_MENU_MILES, GridRequest
from profile_audit.core.settings import get_settings


async def _run(args: argparse.Namespace) -> dict:
    service = build_audit_service(get_settings())
    request = GridRequest(
        keyword=args.keyword,
        center_lat=args.lat,
        center_lng=args.lng,
        target_place_id=args.target_place_id,
        business_name=args.business_name,
        grid_size=args.grid_size,
        radius_miles=args.radius,
    )
    try:
        service.cache.restore()
        run = await service.fetch_rank_grid(args.subject, request)
    finally:
        await service.shutdown()
    return {
        "points": [point.model_dump(mode="json") for point in run.points],
        "summary": run.summary.model_dump(mode="json"),
    }


def main() -> None:
    parser = argparse.ArgumentParser(description="Run a local rank grid for one business and print the summary")
    parser.add_argument("--subject", required=True, help="Business id used as cache key")
    parser.add_argument("--keyword", required=True, help="Search keyword")
    parser.add_argument("--lat", required=True, type=float, help="Grid centre latitude")
    parser.add_argument("--lng", required=True, type=float, help="Grid centre longitude")
    parser.add_argument("--target-place-id", required=True, help="Google cid of the business")
    parser.add_argument("--business-name", default=None, help="Name used when the cid does not match")
    parser.add_argument("--grid-size", type=int, default=3, choices=GRID_SIZES)
    parser.add_argument("--radius", type=float, default=0.5, choices=RADIUS_MENU_MILES, help="Radius in miles")
    parser.add_argument("--output", default=None, help="Optional JSON file for every grid point")
    args = parser.parse_args()

    settings = get_settings()
    configure_logging(settings.log_level, settings.logs_path or None)
    result = asyncio.run(_run(args))

    if args.output:
        output = Path(args.output)
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(json.dumps(result, ensure_ascii=False, indent=2), encoding="utf-8")
        print(f"Grid points written to {output}")

    summary = result["summary"]
    print(
        f"ranked {summary['ranked_points']}/{summary['total_points']} points, "
        f"average {summary['average_rank']}, best {summary['best_rank']}, worst {summary['worst_rank']}"
    )


if __name__ == "__main__":
    main()
