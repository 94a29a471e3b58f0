#!/usr/bin/env python3
"""
Read-time course lookup with assessment weightings derived from the description
"""

import argparse
import json
import logging
import sys
from typing import Any, Dict, List, Optional, Sequence

from course_store import (
    SQLiteStore,
    StoreError,
    SupabaseStore,
    load_store_config,
)
from weight_extractor import extract_weightings

logger = logging.getLogger(__name__)


def get_course(store, code: str) -> Optional[Dict[str, Any]]:
    """Stored course row plus its weightings, or None if the code is unknown"""
    rows = store.select('courses', '*', {'code': code})
    if not rows:
        return None

    course = dict(rows[0])
    course['weightings'] = [c.to_dict() for c in extract_weightings(course.get('description') or '')]
    return course


def extract_all_weightings(store) -> List[Dict[str, Any]]:
    """Weightings for every stored course"""
    courses = store.select('courses', 'code, description')
    logger.info(f"Processing {len(courses)} courses...")

    results = []
    for i, course in enumerate(courses, 1):
        weightings = extract_weightings(course.get('description') or '')
        results.append({
            'code': course['code'],
            'weightings': [c.to_dict() for c in weightings],
        })
        if i % 100 == 0:
            logger.info(f"Processed {i}/{len(courses)} courses...")

    return results


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description='Look up stored courses with their assessment weightings')
    parser.add_argument('code', nargs='?', help='Course code, e.g. CIS*1300')
    parser.add_argument('--all', action='store_true', help='Extract weightings for every stored course')
    parser.add_argument('--backend', choices=['supabase', 'sqlite'], default='supabase')
    parser.add_argument('--db-path', default='courses.db', help='SQLite database file (sqlite backend)')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')

    args = parser.parse_args(argv)
    if not args.code and not args.all:
        parser.error('a course code or --all is required')

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler(sys.stderr)]
    )

    try:
        if args.backend == 'sqlite':
            store = SQLiteStore(args.db_path)
        else:
            config = load_store_config()
            if not config.url:
                logger.error("💥 SUPABASE_URL is not set")
                return 1
            # Reads only need the public key when no service key is configured
            store = SupabaseStore(config.url, config.service_key or config.anon_key)

        if args.all:
            results = extract_all_weightings(store)
            if not results:
                logger.error("No courses found. Run calendar_scraper.py first.")
                return 1
            logger.info(f"Sample weightings: {json.dumps(results[:5])}")
            logger.info("✅ Weight extraction complete!")
            return 0

        course = get_course(store, args.code)
    except StoreError as e:
        logger.error(f"💥 {e}")
        return 1

    if course is None:
        logger.error(f"Course not found: {args.code}")
        return 1

    print(json.dumps(course, indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())
