#!/usr/bin/env python3
"""
Tests for course storage backends, configuration and read-time lookup
"""

import os
import shutil
import tempfile
import unittest
from unittest.mock import Mock, patch

import httpx
from supabase import PostgrestAPIError

from course_lookup import extract_all_weightings, get_course, main as lookup_main
from course_store import (
    MissingCredentialError,
    SQLiteStore,
    StoreConfig,
    StoreError,
    SupabaseStore,
    load_store_config,
    require_service_key,
)


def course_row(code="CIS*1300", description="", **overrides):
    row = {
        'subject': code.split('*')[0],
        'code': code,
        'title': 'Programming',
        'description': description,
        'credits': 0.5,
        'url': 'https://calendar.uoguelph.ca/undergraduate-calendar/course-descriptions/cis',
    }
    row.update(overrides)
    return row


class TestStoreConfig(unittest.TestCase):
    """Test environment-driven configuration"""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_reads_env_local_file(self):
        with open(os.path.join(self.temp_dir, '.env.local'), 'w') as f:
            f.write("NEXT_PUBLIC_SUPABASE_URL=https://example.supabase.co\n")
            f.write("SUPABASE_SERVICE_ROLE_KEY=service-key\n")

        with patch.dict(os.environ, {}, clear=True):
            config = load_store_config(self.temp_dir)

        self.assertEqual(config.url, "https://example.supabase.co")
        self.assertEqual(config.service_key, "service-key")
        self.assertEqual(config.anon_key, "")

    def test_environment_wins_over_file(self):
        with open(os.path.join(self.temp_dir, '.env'), 'w') as f:
            f.write("SUPABASE_SERVICE_ROLE_KEY=from-file\n")

        with patch.dict(os.environ, {'SUPABASE_SERVICE_ROLE_KEY': 'from-env'}, clear=True):
            config = load_store_config(self.temp_dir)

        self.assertEqual(config.service_key, "from-env")

    def test_require_service_key(self):
        require_service_key(StoreConfig(url="https://x.supabase.co", service_key="k"))

        with self.assertRaises(MissingCredentialError) as ctx:
            require_service_key(StoreConfig(url="https://x.supabase.co"))
        self.assertIn("SUPABASE_SERVICE_ROLE_KEY", str(ctx.exception))

        with self.assertRaises(MissingCredentialError):
            SupabaseStore.from_config(StoreConfig())


def query_builder(pages=()):
    """A chainable stand-in for the supabase table query builder"""
    query = Mock()
    for method in ('select', 'eq', 'order', 'range', 'upsert'):
        getattr(query, method).return_value = query
    query.execute.side_effect = [Mock(data=page) for page in pages]
    return query


class TestSupabaseStore(unittest.TestCase):
    """Test query building against a mocked supabase client"""

    def setUp(self):
        self.client = Mock()
        self.store = SupabaseStore("https://example.supabase.co", "secret", client=self.client)

    def test_upsert_request(self):
        query = query_builder([[]])
        self.client.table.return_value = query
        rows = [course_row()]

        self.store.upsert('courses', rows, 'code')

        self.client.table.assert_called_once_with('courses')
        query.upsert.assert_called_once_with(rows, on_conflict='code')
        query.execute.assert_called_once_with()

    def test_upsert_skips_empty_batch(self):
        self.store.upsert('courses', [], 'code')
        self.client.table.assert_not_called()

    def test_upsert_api_error_becomes_store_error(self):
        query = query_builder()
        query.execute.side_effect = PostgrestAPIError({'message': 'duplicate key', 'code': '23505'})
        self.client.table.return_value = query

        with self.assertRaises(StoreError):
            self.store.upsert('courses', [course_row()], 'code')

    def test_upsert_network_error_becomes_store_error(self):
        query = query_builder()
        query.execute.side_effect = httpx.ConnectError("down")
        self.client.table.return_value = query

        with self.assertRaises(StoreError):
            self.store.upsert('courses', [course_row()], 'code')

    def test_select_pages_until_short_page(self):
        self.store.page_size = 2
        query = query_builder([
            [course_row("CIS*1300"), course_row("CIS*1500")],
            [course_row("CIS*2500")],
        ])
        self.client.table.return_value = query

        rows = self.store.select('courses', 'code, description', {'subject': 'CIS'})

        self.assertEqual([r['code'] for r in rows], ["CIS*1300", "CIS*1500", "CIS*2500"])
        self.assertEqual(query.execute.call_count, 2)
        query.select.assert_called_with('code, description')
        query.eq.assert_called_with('subject', 'CIS')
        query.order.assert_called_with('code')
        self.assertEqual([c[0] for c in query.range.call_args_list], [(0, 1), (2, 3)])

    def test_select_api_error_becomes_store_error(self):
        query = query_builder()
        query.execute.side_effect = PostgrestAPIError({'message': 'relation "grades" does not exist'})
        self.client.table.return_value = query

        with self.assertRaises(StoreError):
            self.store.select('grades')

    def test_invalid_url_becomes_store_error(self):
        with self.assertRaises(StoreError):
            SupabaseStore("not-a-url", "secret")


class TestSQLiteStore(unittest.TestCase):
    """Test the local store against an in-memory database"""

    def setUp(self):
        self.store = SQLiteStore(':memory:')

    def tearDown(self):
        self.store.close()

    def test_upsert_overwrites_by_code(self):
        self.store.upsert('courses', [course_row(description="old")], 'code')
        self.store.upsert('courses', [course_row(description="new", title="Renamed")], 'code')

        rows = self.store.select('courses')
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]['description'], "new")
        self.assertEqual(rows[0]['title'], "Renamed")

    def test_select_with_filter_and_columns(self):
        self.store.upsert('courses', [course_row("CIS*1300"), course_row("MATH*1200")], 'code')

        rows = self.store.select('courses', 'code, subject', {'subject': 'MATH'})
        self.assertEqual(rows, [{'code': 'MATH*1200', 'subject': 'MATH'}])

    def test_unknown_table_or_column(self):
        with self.assertRaises(StoreError):
            self.store.select('grades')
        with self.assertRaises(StoreError):
            self.store.select('courses', 'code, nonsense')
        with self.assertRaises(StoreError):
            self.store.upsert('courses', [{'title': 'No code'}], 'code')


class TestCourseLookup(unittest.TestCase):
    """Test read-time extraction entry points"""

    def setUp(self):
        self.store = SQLiteStore(':memory:')
        self.store.upsert('courses', [
            course_row("CIS*1300", "Evaluation: Assignments: 40%, Final Exam: 60%"),
            course_row("CIS*1500", ""),
        ], 'code')

    def tearDown(self):
        self.store.close()

    def test_get_course_adds_weightings(self):
        course = get_course(self.store, "CIS*1300")

        self.assertEqual(course['code'], "CIS*1300")
        self.assertEqual(course['weightings'], [
            {'name': 'Assignments', 'weight': 40},
            {'name': 'Final Exam', 'weight': 60},
        ])

    def test_get_course_default_weightings(self):
        course = get_course(self.store, "CIS*1500")
        self.assertEqual([w['weight'] for w in course['weightings']], [30, 30, 40])

    def test_get_course_missing(self):
        self.assertIsNone(get_course(self.store, "ZOO*9999"))

    def test_extract_all_weightings(self):
        results = extract_all_weightings(self.store)
        self.assertEqual([r['code'] for r in results], ["CIS*1300", "CIS*1500"])
        self.assertEqual(len(results[1]['weightings']), 3)

    def test_cli_lookup(self):
        temp_dir = tempfile.mkdtemp()
        try:
            db_path = os.path.join(temp_dir, 'courses.db')
            store = SQLiteStore(db_path)
            store.upsert('courses', [course_row("CIS*1300", "Midterm: 30%")], 'code')
            store.close()

            with patch('builtins.print') as mock_print:
                self.assertEqual(lookup_main(['CIS*1300', '--backend', 'sqlite', '--db-path', db_path]), 0)
            self.assertIn('"Midterm"', mock_print.call_args[0][0])

            self.assertEqual(lookup_main(['ZOO*9999', '--backend', 'sqlite', '--db-path', db_path]), 1)
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)


if __name__ == "__main__":
    unittest.main()
