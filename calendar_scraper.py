#!/usr/bin/env python3
"""
University of Guelph Calendar Course Scraper
Harvests course-description pages from every calendar section, normalizes the
course blocks and upserts them into the course store
"""

import argparse
import asyncio
import json
import logging
import math
import re
import sys
from collections import Counter
from dataclasses import dataclass, asdict
from datetime import datetime
from functools import partial
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import urljoin, urlparse

import aiohttp
import pandas as pd
from bs4 import BeautifulSoup, Tag

from course_store import (
    MissingCredentialError,
    SQLiteStore,
    StoreError,
    SupabaseStore,
    load_store_config,
)

logger = logging.getLogger(__name__)

SITE_ROOT = 'https://calendar.uoguelph.ca'

CALENDAR_SECTIONS = (
    'undergraduate-calendar',
    'guelph-humber-calendar',
    'associate-diploma',
)

BASE_URLS = tuple(f'{SITE_ROOT}/{section}/course-descriptions/' for section in CALENDAR_SECTIONS)

# Index pages leave out some low-enrollment subjects, so every code below is
# tried in every calendar section regardless of what the indexes link to.
KNOWN_SUBJECTS = (
    # Undergraduate
    'acct', 'agr', 'ansc', 'anth', 'arab', 'arth', 'asci', 'bioc', 'biol', 'biom', 'blck', 'bot', 'bus',
    'chem', 'chin', 'clas', 'cis', 'coop', 'crea', 'crwr', 'cjpp', 'crop', 'cts', 'cdx', 'csi', 'cons',
    'econ', 'engg', 'engl', 'edrd', 'envm', 'envs', 'eqn', 'euro', 'xsen', 'frhd', 'fin', 'food', 'fare',
    'fren', 'geog', 'germ', 'grek', 'hist', 'hort', 'htm', 'hhns', 'hk', 'hrob', 'humn', 'ies', 'indg',
    'ibio', 'ieaf', 'ips', 'iss', 'univ', 'idev', 'ital', 'jls', 'larc', 'lat', 'lacs', 'lead', 'ling',
    'mgmt', 'mcs', 'math', 'micr', 'mcb', 'mbg', 'musc', 'nano', 'neur', 'nutr', 'oneh', 'oagr', 'path',
    'phil', 'phys', 'pbio', 'pols', 'popm', 'port', 'psyc', 'real', 'rpd', 'rurs', 'sxgn', 'socp', 'soc',
    'soan', 'span', 'spmt', 'stat', 'sart', 'thst', 'tox', 'vetm', 'wmst', 'zoo', 'dasc', 'clst',
    # Guelph-Humber
    'ahss', 'badm', 'css', 'ecs', 'just', 'kin', 'mdst', 'scma',
    # Associate Diploma
    'dagr', 'denm', 'deqn', 'dhrt', 'cphh', 'dtm', 'cvoa', 'dvt',
)

DEFAULT_CREDITS = 0.50
REQUEST_DELAY = 0.3
BATCH_SIZE = 100
COURSES_TABLE = 'courses'
CONFLICT_KEY = 'code'

# CIS*1300, and CIS1300 where the asterisk was dropped
CODE_PATTERN = re.compile(r'(?<![A-Za-z])([A-Z]{2,4})\*?(\d{4})(?!\d)')
STRICT_CODE_PATTERN = re.compile(r'(?<![A-Za-z])([A-Z]{2,4})\*(\d{4})(?!\d)')
CODE_PREFIX = re.compile(r'^[A-Z]{2,4}\*?\d{4}\s*[-–]?\s*', re.IGNORECASE)
# Descriptions only lose a leading code when a dash separates it from the text
DESCRIPTION_CODE_PREFIX = re.compile(r'^[A-Z]{2,4}\*?\d{4}\s*[-–]\s*')
BRACKET_CREDITS = re.compile(r'\[(\d+\.?\d*)\]')
UNIT_CREDITS = re.compile(r'(\d+\.?\d*)\s*(?:credit|unit)', re.IGNORECASE)
TRAILING_CREDITS = re.compile(r'\s*\[\d+\.?\d*\]\s*$')

BLOCK_SELECTORS = (
    'div.courseblock',
    'div.course',
    '.courseblock',
    '.course',
)

CODE_SELECTORS = (
    'span.detail-code strong',
    'span.detail-code',
    '.detail-code strong',
    '.detail-code',
    'strong:-soup-contains("*")',
)

TITLE_SELECTORS = (
    'span.detail-title strong',
    'span.detail-title',
    '.detail-title strong',
    '.detail-title',
    'h3',
    'h4',
    '.courseblocktitle strong',
    '.courseblocktitle',
)

DESCRIPTION_SELECTORS = (
    'div.courseblockextra',
    '.courseblockextra',
    'div.description',
    '.description',
    '.courseblockdesc',
    'p',
)

CREDITS_SELECTORS = (
    'span.detail-hours_html strong',
    'span.detail-hours_html',
    '.detail-hours_html',
    'span.detail-hours strong',
    '.detail-hours',
)


@dataclass
class CourseRecord:
    """One course as listed on a calendar subject page"""
    subject: str
    code: str
    title: str = ""
    description: str = ""
    credits: float = DEFAULT_CREDITS
    url: str = ""

    def to_row(self) -> Dict[str, Any]:
        return asdict(self)


class FetchError(Exception):
    """A calendar page could not be retrieved"""

    def __init__(self, url: str, status: Optional[int] = None, reason: str = ""):
        self.url = url
        self.status = status
        self.reason = reason
        detail = f"HTTP {status}" if status is not None else "request failed"
        if reason:
            detail = f"{detail} ({reason})"
        super().__init__(f"Failed to fetch {url}: {detail}")


class PageNotFoundError(FetchError):
    """The calendar answered 404 for the page"""


def fetch_error_for(url: str, status: int, reason: str = "") -> FetchError:
    if status == 404:
        return PageNotFoundError(url, status, reason)
    return FetchError(url, status, reason)


class CalendarFetcher:
    """Async page fetcher; one shared aiohttp session per ingestion run"""

    DEFAULT_HEADERS = {
        'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36',
        'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
        'Accept-Language': 'en-US,en;q=0.5',
    }

    def __init__(self, timeout: float = 30, session: Optional[aiohttp.ClientSession] = None):
        self.timeout = timeout
        self.session = session
        self._owns_session = session is None

    async def __aenter__(self) -> 'CalendarFetcher':
        if self.session is None:
            self.session = aiohttp.ClientSession(
                headers=self.DEFAULT_HEADERS,
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if self._owns_session and self.session is not None:
            await self.session.close()
            self.session = None

    async def fetch(self, url: str) -> str:
        """Return the page body, raising FetchError on any non-2xx answer"""
        if self.session is None:
            raise RuntimeError("CalendarFetcher must be used as an async context manager")

        try:
            async with self.session.get(url) as response:
                if not 200 <= response.status < 300:
                    raise fetch_error_for(url, response.status, response.reason or "")
                return await response.text(errors='replace')
        except aiohttp.ClientError as e:
            raise FetchError(url, reason=str(e)) from e
        except asyncio.TimeoutError as e:
            raise FetchError(url, reason="timed out") from e
        except LookupError as e:
            # Unknown charset announced by the server
            raise FetchError(url, reason=f"undecodable body: {e}") from e


# Subject discovery

def normalize_url(url: str) -> str:
    return url.rstrip('/')


def subject_url(section: str, subject: str) -> str:
    return f'{SITE_ROOT}/{section}/course-descriptions/{subject.lower()}'


def subject_from_url(url: str) -> str:
    """Subject code implied by the last path segment of a subject page URL"""
    segment = urlparse(url).path.rstrip('/').rsplit('/', 1)[-1]
    return segment.upper() or 'UNKNOWN'


def harvest_subject_links(html: str, base_url: str) -> List[str]:
    """Absolute course-description links found on an index page"""
    soup = BeautifulSoup(html, 'html.parser')
    links = []

    for anchor in soup.select('a[href*="/course-descriptions/"]'):
        href = anchor.get('href', '')
        if not href or '#' in href or '.pdf' in href.lower():
            continue
        links.append(normalize_url(urljoin(base_url, href)))

    return list(dict.fromkeys(links))


async def discover_subject_urls(fetcher: CalendarFetcher,
                                base_urls: Sequence[str] = BASE_URLS,
                                sections: Sequence[str] = CALENDAR_SECTIONS,
                                known_subjects: Sequence[str] = KNOWN_SUBJECTS) -> List[str]:
    """Union of linked subject pages and every section x known subject URL"""
    urls: Dict[str, None] = {}
    index_pages = {normalize_url(u) for u in base_urls}

    for base_url in base_urls:
        try:
            html = await fetcher.fetch(base_url)
        except FetchError as e:
            logger.error(f"❌ Error fetching index {base_url}: {e}")
            continue

        links = [link for link in harvest_subject_links(html, base_url) if link not in index_pages]
        for link in links:
            urls.setdefault(link)
        logger.info(f"🔗 {base_url}: {len(links)} subject links")

    for section in sections:
        for subject in known_subjects:
            urls.setdefault(subject_url(section, subject))

    logger.info(f"Found {len(urls)} unique subject pages (including {len(known_subjects)} known subjects)")
    return list(urls)


# Course block extraction

def _clean(text: str) -> str:
    return ' '.join(text.split())


def _parse_code(text: str, pattern: re.Pattern = CODE_PATTERN) -> Optional[Tuple[str, str]]:
    """(subject, canonical code) for the first course code in text"""
    match = pattern.search(text or '')
    if not match:
        return None
    subject, number = match.groups()
    return subject, f'{subject}*{number}'


def _parse_credits(text: str) -> Optional[float]:
    for pattern in (BRACKET_CREDITS, UNIT_CREDITS):
        match = pattern.search(text)
        if match:
            value = float(match.group(1))
            if math.isfinite(value):
                return value
    return None


def _select_text(selector: str, block: Tag) -> Optional[str]:
    node = block.select_one(selector)
    if node is None:
        return None
    return _clean(node.get_text(' '))


def first_match(strategies: Iterable[Callable[..., Optional[Any]]], *args) -> Optional[Any]:
    """Run strategies in order and return the first result that is not None"""
    for strategy in strategies:
        result = strategy(*args)
        if result is not None:
            return result
    return None


def code_from_selector(selector: str, block: Tag) -> Optional[Tuple[str, str]]:
    text = _select_text(selector, block)
    return _parse_code(text) if text else None


def code_from_block_text(block: Tag) -> Optional[Tuple[str, str]]:
    return _parse_code(block.get_text(' '), STRICT_CODE_PATTERN)


def title_from_selector(selector: str, block: Tag) -> Optional[str]:
    text = _select_text(selector, block)
    if not text:
        return None
    title = TRAILING_CREDITS.sub('', CODE_PREFIX.sub('', text, count=1)).strip()
    return title or None


def description_from_selector(selector: str, block: Tag, title: str) -> Optional[str]:
    nodes = block.select(selector)
    if not nodes:
        return None

    text = '\n\n'.join(t for t in (_clean(node.get_text(' ')) for node in nodes) if t)
    text = DESCRIPTION_CODE_PREFIX.sub('', text, count=1)
    if title:
        text = re.sub(rf'^{re.escape(title)}\s*[-–]?\s*', '', text, count=1, flags=re.IGNORECASE)
    return text.strip() or None


def credits_from_selector(selector: str, block: Tag) -> Optional[float]:
    text = _select_text(selector, block)
    return _parse_credits(text) if text else None


def credits_from_block_text(block: Tag) -> Optional[float]:
    # Outside the credits markup only the "0.50 credits" form counts
    match = UNIT_CREDITS.search(block.get_text(' '))
    if not match:
        return None
    value = float(match.group(1))
    return value if math.isfinite(value) else None


CODE_STRATEGIES = tuple(partial(code_from_selector, s) for s in CODE_SELECTORS) + (code_from_block_text,)
TITLE_STRATEGIES = tuple(partial(title_from_selector, s) for s in TITLE_SELECTORS)
DESCRIPTION_STRATEGIES = tuple(partial(description_from_selector, s) for s in DESCRIPTION_SELECTORS)
CREDITS_STRATEGIES = tuple(partial(credits_from_selector, s) for s in CREDITS_SELECTORS) + (credits_from_block_text,)


def parse_course_block(block: Tag, url: str) -> Optional[CourseRecord]:
    """Build a CourseRecord from one course block, or None if it has no code"""
    parsed = first_match(CODE_STRATEGIES, block)
    if parsed is None:
        return None
    subject, code = parsed

    title = first_match(TITLE_STRATEGIES, block) or ""
    description = first_match(DESCRIPTION_STRATEGIES, block, title) or ""
    credits = first_match(CREDITS_STRATEGIES, block)

    return CourseRecord(
        subject=subject,
        code=code,
        title=title or code,
        description=description,
        credits=DEFAULT_CREDITS if credits is None else credits,
        url=url,
    )


def parse_codes_from_text(soup: BeautifulSoup, url: str) -> List[CourseRecord]:
    """Minimal records for every bare course code in the page text"""
    root = soup.body or soup
    codes = dict.fromkeys(
        f'{m.group(1)}*{m.group(2)}' for m in STRICT_CODE_PATTERN.finditer(root.get_text(' '))
    )
    return [
        CourseRecord(subject=code.split('*', 1)[0], code=code, url=url)
        for code in codes
    ]


def parse_subject_page(html: str, url: str) -> List[CourseRecord]:
    """All courses on one subject page, in document order"""
    soup = BeautifulSoup(html, 'html.parser')
    courses: List[CourseRecord] = []

    for selector in BLOCK_SELECTORS:
        seen = set()
        for block in soup.select(selector):
            course = parse_course_block(block, url)
            if course is None or course.code in seen:
                continue
            seen.add(course.code)
            courses.append(course)

        if courses:
            logger.debug(f"Selector {selector!r} produced {len(courses)} courses on {url}")
            break

    if not courses:
        courses = parse_codes_from_text(soup, url)
        if courses:
            logger.debug(f"No course blocks on {url}; recovered {len(courses)} bare codes from text")

    return courses


# Aggregation and persistence

class CourseAggregator:
    """Keeps one record per course code across all subject pages"""

    def __init__(self):
        self.courses: Dict[str, CourseRecord] = {}
        self.subject_counts: Counter = Counter()

    def __len__(self) -> int:
        return len(self.courses)

    def add(self, records: Iterable[CourseRecord]) -> int:
        """Merge records in; returns how many codes were new"""
        added = 0
        for record in records:
            current = self.courses.get(record.code)
            if current is None:
                self.courses[record.code] = record
                self.subject_counts[record.subject] += 1
                added += 1
            elif len(record.description) > len(current.description):
                # Strictly longer only, so equal lengths keep the first record
                self.courses[record.code] = record
        return added

    def records(self) -> List[CourseRecord]:
        return list(self.courses.values())


@dataclass
class WriteResult:
    written: int = 0
    failed_batches: int = 0
    total_batches: int = 0


async def write_courses(store, records: Sequence[CourseRecord], batch_size: int = BATCH_SIZE) -> WriteResult:
    """Upsert records in fixed-size batches; a failed batch does not stop the rest"""
    result = WriteResult(total_batches=math.ceil(len(records) / batch_size) if records else 0)

    for start in range(0, len(records), batch_size):
        batch = records[start:start + batch_size]
        number = start // batch_size + 1
        try:
            await asyncio.to_thread(store.upsert, COURSES_TABLE, [r.to_row() for r in batch], CONFLICT_KEY)
        except StoreError as e:
            result.failed_batches += 1
            logger.error(f"❌ Error inserting batch {number}: {e}")
            continue

        result.written += len(batch)
        logger.info(f"  Inserted batch {number}/{result.total_batches} ({result.written}/{len(records)} courses)")

    return result


class CalendarScraper:
    """Sequential ingestion run: discover, scrape each subject, dedupe, write"""

    def __init__(self, fetcher: CalendarFetcher, store=None,
                 delay: float = REQUEST_DELAY, batch_size: int = BATCH_SIZE):
        self.fetcher = fetcher
        self.store = store
        self.delay = delay
        self.batch_size = batch_size
        self.aggregator = CourseAggregator()

        self.stats = {
            'total_subjects': 0,
            'processed_subjects': 0,
            'empty_subjects': [],
            'missing_subjects': [],
            'failed_subjects': [],
            'courses_found': 0,
            'unique_courses': 0,
            'written_courses': 0,
            'failed_batches': 0,
            'start_time': None,
            'end_time': None
        }

    async def scrape_subject(self, url: str) -> List[CourseRecord]:
        html = await self.fetcher.fetch(url)
        return parse_subject_page(html, url)

    async def scrape_all_courses(self, max_subjects: Optional[int] = None) -> List[CourseRecord]:
        """Scrape every discovered subject page, one at a time"""
        logger.info("📚 Fetching subject links...")
        urls = await discover_subject_urls(self.fetcher)
        if max_subjects:
            urls = urls[:max_subjects]
            logger.info(f"Limited to first {max_subjects} subjects")
        self.stats['total_subjects'] = len(urls)

        for i, url in enumerate(urls, 1):
            if i > 1 and self.delay:
                await asyncio.sleep(self.delay)

            subject = subject_from_url(url)
            logger.info(f"Scraping {i}/{len(urls)}: {subject} - {url}")

            try:
                courses = await self.scrape_subject(url)
            except PageNotFoundError:
                self.stats['missing_subjects'].append(subject)
                logger.warning(f"  ⚠️  {subject}: Page not found (404) - skipping")
                continue
            except FetchError as e:
                self.stats['failed_subjects'].append(subject)
                logger.error(f"  ❌ {subject}: Error - {e}")
                continue

            self.stats['processed_subjects'] += 1
            self.stats['courses_found'] += len(courses)
            added = self.aggregator.add(courses)

            if courses:
                logger.info(f"  ✅ {subject}: Found {len(courses)} courses ({added} new, {len(self.aggregator)} total unique)")
            else:
                self.stats['empty_subjects'].append(subject)
                logger.warning(f"  ⚠️  {subject}: No courses found")

        records = self.aggregator.records()
        self.stats['unique_courses'] = len(records)
        return records

    async def run(self, max_subjects: Optional[int] = None) -> Tuple[List[CourseRecord], WriteResult]:
        self.stats['start_time'] = datetime.now()
        logger.info("🚀 Starting course scraping...")

        records = await self.scrape_all_courses(max_subjects=max_subjects)

        result = WriteResult()
        if self.store is not None:
            logger.info(f"💾 Writing {len(records)} courses...")
            result = await write_courses(self.store, records, self.batch_size)
            self.stats['written_courses'] = result.written
            self.stats['failed_batches'] = result.failed_batches

        self.stats['end_time'] = datetime.now()
        self.log_final_stats()
        return records, result

    def log_final_stats(self):
        duration = self.stats['end_time'] - self.stats['start_time']

        logger.info("📊 SCRAPING STATISTICS")
        logger.info("=" * 60)
        logger.info(f"⏱️  Total time: {duration}")
        logger.info(f"📚 Subjects processed: {self.stats['processed_subjects']}/{self.stats['total_subjects']}")
        logger.info(f"⚠️  Empty subjects: {len(self.stats['empty_subjects'])}")
        logger.info(f"⚠️  Missing subjects (404): {len(self.stats['missing_subjects'])}")
        logger.info(f"❌ Failed subjects: {len(self.stats['failed_subjects'])}")
        logger.info(f"🎓 Courses found: {self.stats['courses_found']} ({self.stats['unique_courses']} unique)")

        for subject, count in self.aggregator.subject_counts.most_common(20):
            logger.info(f"   {subject}: {count} courses")
        logger.info(f"   Total unique subjects with courses: {len(self.aggregator.subject_counts)}")

        if self.store is not None:
            logger.info(f"💾 Courses written: {self.stats['written_courses']}/{self.stats['unique_courses']}")
            logger.info(f"❌ Failed batches: {self.stats['failed_batches']}")


def save_results(records: Sequence[CourseRecord], output_file: str, format_type: str = 'jsonl'):
    """Dump scraped courses to a local file"""
    logger.info(f"💾 Saving {len(records)} courses to {output_file}...")
    rows = [r.to_row() for r in records]

    if format_type.lower() == 'jsonl':
        with open(output_file, 'w', encoding='utf-8') as f:
            for row in rows:
                json.dump(row, f, ensure_ascii=False, separators=(',', ':'))
                f.write('\n')

    elif format_type.lower() == 'json':
        with open(output_file, 'w', encoding='utf-8') as f:
            json.dump({row['code']: row for row in rows}, f, ensure_ascii=False, indent=2)

    elif format_type.lower() == 'csv':
        df = pd.DataFrame(rows, columns=list(CourseRecord.__dataclass_fields__))
        df.to_csv(output_file, index=False)

    else:
        raise ValueError(f"Unsupported format: {format_type}")


def setup_logging(debug: bool = False, log_file: Optional[str] = 'calendar_scraper.log'):
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, mode='w'))

    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True
    )


def build_store(args):
    """Open the configured store; Supabase needs its service key up front"""
    if args.backend == 'sqlite':
        return SQLiteStore(args.db_path)
    return SupabaseStore.from_config(load_store_config(), timeout=args.timeout)


async def run_ingestion(args, store) -> Tuple[List[CourseRecord], WriteResult]:
    async with CalendarFetcher(timeout=args.timeout) as fetcher:
        scraper = CalendarScraper(fetcher, store, delay=args.delay, batch_size=args.batch_size)
        records, result = await scraper.run(max_subjects=args.max_subjects)

    if args.output:
        save_results(records, args.output, args.format)

    return records, result


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main execution function"""
    parser = argparse.ArgumentParser(description='University of Guelph Calendar Course Scraper')
    parser.add_argument('--backend', choices=['supabase', 'sqlite'], default='supabase', help='Where scraped courses are written')
    parser.add_argument('--db-path', default='courses.db', help='SQLite database file (sqlite backend)')
    parser.add_argument('--delay', type=float, default=REQUEST_DELAY, help='Delay between subject page requests (seconds)')
    parser.add_argument('--batch-size', type=int, default=BATCH_SIZE, help='Courses per upsert batch')
    parser.add_argument('--timeout', type=float, default=30, help='Per-request timeout (seconds)')
    parser.add_argument('--max-subjects', type=int, help='Limit number of subjects (for testing)')
    parser.add_argument('--output', '-o', help='Also save scraped courses to this file')
    parser.add_argument('--format', choices=['jsonl', 'json', 'csv'], default='jsonl', help='Output file format')
    parser.add_argument('--log-file', default='calendar_scraper.log', help='Log file path')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')

    args = parser.parse_args(argv)
    setup_logging(args.debug, args.log_file)

    logger.info("🎓 University of Guelph Calendar Course Scraper")
    logger.info(f"🗄️  Backend: {args.backend}")

    try:
        store = build_store(args)
    except MissingCredentialError as e:
        logger.error(f"💥 {e}")
        return 1
    except StoreError as e:
        logger.error(f"💥 Could not open course store: {e}")
        return 1

    try:
        records, result = asyncio.run(run_ingestion(args, store))
    except KeyboardInterrupt:
        logger.info("⏹️ Scraping interrupted by user")
        return 130

    logger.info(f"✅ Successfully scraped {len(records)} courses ({result.written} saved)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
