"""Discover calendar feeds for a city and write the candidates to JSON."""
from __future__ import annotations

import argparse
import json
from pathlib import Path

from ingest.city_catalog import CityCatalog
from scrapers.feed_discoverer import FeedDiscoverer

OUTPUT_PATH = Path(__file__).resolve().parent.parent / "sources" / "discovered_sources.json"


def main(argv: list[str] | None = None) -> None:
    """Run discovery for one location and export the results."""
    parser = argparse.ArgumentParser(description="Discover calendar feeds for a location")
    parser.add_argument("city", help='City name, e.g. "Needham"')
    parser.add_argument("state", help="State name or two-letter code")
    parser.add_argument("--output", type=Path, default=OUTPUT_PATH)
    parser.add_argument(
        "--popular", action="store_true", help="Also try well-known major-city URLs"
    )
    args = parser.parse_args(argv)

    discoverer = FeedDiscoverer(CityCatalog.load())
    if args.popular:
        candidates = discoverer.discover_for_popular_location(args.city, args.state)
    else:
        candidates = discoverer.discover_for_location(args.city, args.state)

    args.output.write_text(json.dumps([c.to_dict() for c in candidates], indent=2))
    for candidate in candidates:
        print(f"{candidate.confidence:.2f}  {candidate.source.name}: {candidate.source.feed_url}")
    print(f"Discovered {len(candidates)} feeds -> {args.output}")


if __name__ == "__main__":
    main()
