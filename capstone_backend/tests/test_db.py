import os
import tempfile
import threading
import unittest
import uuid
from datetime import datetime, timezone
from unittest.mock import patch

from sqlalchemy import Delete, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from capstone_backend.db import (
    HistoryRow,
    InMemoryDbClient,
    ProfileRow,
    SqlDbClient,
)
from capstone_backend.errors import (
    ConflictError,
    InternalError,
    NotFoundError,
    ValidationError,
)


def _write_feedback_concurrently(db, threads=8, per_thread=50):
    errors = []

    def work(worker):
        for i in range(per_thread):
            try:
                db.create_feedback(f"worker {worker} #{i}", i % 4 + 1)
            except Exception as exc:
                errors.append(exc)

    workers = [threading.Thread(target=work, args=(n,)) for n in range(threads)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join()
    return errors


class GatewayContract:
    """Behaviour shared by every DbClient implementation."""

    def make_db(self):
        raise NotImplementedError

    def setUp(self):
        self.db = self.make_db()

    def test_create_identity_once_per_email(self):
        record = self.db.create_identity("budi@example.com", "Percakapan")
        self.assertEqual(record.email, "budi@example.com")
        self.assertIsNone(record.message)
        self.assertTrue(record.id)
        with self.assertRaises(ConflictError):
            self.db.create_identity("budi@example.com", "Lagi")

    def test_create_identity_requires_fields(self):
        with self.assertRaises(ValidationError):
            self.db.create_identity("", "Judul")
        with self.assertRaises(ValidationError):
            self.db.create_identity("budi@example.com", None)
        self.assertEqual(self.db.list_history(), [])

    def test_attach_message_to_unknown_email_writes_nothing(self):
        self.db.create_identity("ani@example.com", "Ani")
        with self.assertRaises(NotFoundError):
            self.db.attach_message("nobody@example.com", "halo", True)
        (identity,) = self.db.get_history("ani@example.com")
        self.assertEqual(identity.messages, [])
        self.assertIsNone(identity.message)

    def test_attach_message_refreshes_identity(self):
        created = self.db.create_identity("ani@example.com", "Ani")
        self.db.attach_message("ani@example.com", "pertama", False)
        updated = self.db.attach_message("ani@example.com", "kedua", True)
        self.assertEqual(updated.id, created.id)
        self.assertEqual(updated.message, "kedua")
        self.assertTrue(updated.is_speech_to_text)
        self.assertEqual(updated.detection_type, "Speech to Text")
        self.assertGreaterEqual(updated.created_at, created.created_at)
        self.assertEqual([m.message for m in updated.messages], ["pertama", "kedua"])

    def test_attach_message_requires_flag(self):
        self.db.create_identity("ani@example.com", "Ani")
        with self.assertRaises(ValidationError):
            self.db.attach_message("ani@example.com", "halo", None)
        with self.assertRaises(ValidationError):
            self.db.attach_message("ani@example.com", "", False)

    def test_entry_lookup_by_id_and_email(self):
        entry = self.db.create_entry("Contoh Judul", "Ini adalah isi pesan")
        (found,) = self.db.get_history(entry.id)
        self.assertEqual(found.title, "Contoh Judul")
        self.assertEqual(found.message, "Ini adalah isi pesan")
        self.assertEqual(found.detection_type, "Gesture Detection")

        self.db.create_entry("Satu", "a", email="citra@example.com")
        self.db.create_entry("Dua", "b", email="citra@example.com")
        titles = [r.title for r in self.db.get_history("citra@example.com")]
        self.assertEqual(titles, ["Dua", "Satu"])

        with self.assertRaises(NotFoundError):
            self.db.get_history("does-not-exist")

    def test_list_history_newest_first_and_empty(self):
        self.assertEqual(self.db.list_history(), [])
        self.db.create_entry("lama", "pesan")
        self.db.create_entry("baru", "pesan")
        self.assertEqual([r.title for r in self.db.list_history()], ["baru", "lama"])

    def test_delete_cascades_messages(self):
        self.db.create_identity("dedi@example.com", "Dedi")
        self.db.attach_message("dedi@example.com", "satu", True)
        self.db.attach_message("dedi@example.com", "dua", False)

        self.assertEqual(self.db.delete_history("dedi@example.com"), 1)
        with self.assertRaises(NotFoundError):
            self.db.get_history("dedi@example.com")
        with self.assertRaises(NotFoundError):
            self.db.delete_history("dedi@example.com")

        # A fresh identity for the same email must not inherit old messages.
        self.db.create_identity("dedi@example.com", "Dedi lagi")
        (identity,) = self.db.get_history("dedi@example.com")
        self.assertEqual(identity.messages, [])

    def test_delete_by_id(self):
        entry = self.db.create_entry("hapus", "pesan")
        self.assertEqual(self.db.delete_history(entry.id), 1)
        self.assertEqual(self.db.list_history(), [])

    def test_profile_singleton(self):
        with self.assertRaises(NotFoundError):
            self.db.get_profile()
        first = self.db.update_profile("Budi", "https://cdn.test/a.png")
        second = self.db.update_profile("Budi Santoso")
        self.assertEqual(first.id, 1)
        self.assertEqual(second.id, 1)
        profile = self.db.get_profile()
        self.assertEqual(profile.name, "Budi Santoso")
        self.assertEqual(profile.profile_picture_url, "https://cdn.test/a.png")
        self.db.update_profile("Budi", "https://cdn.test/b.png")
        self.assertEqual(self.db.get_profile().profile_picture_url, "https://cdn.test/b.png")

    def test_profile_requires_name(self):
        with self.assertRaises(ValidationError):
            self.db.update_profile("")

    def test_feedback_rating_boundaries(self):
        self.assertEqual(self.db.create_feedback("Aplikasi sangat membantu", 1).rating, 1)
        self.assertEqual(self.db.create_feedback("Aplikasi sangat membantu", 4).rating, 4)
        for rating in (0, 5):
            with self.assertRaises(ValidationError):
                self.db.create_feedback("Aplikasi sangat membantu", rating)
        with self.assertRaises(ValidationError):
            self.db.create_feedback("", 3)
        self.assertEqual(len(self.db.list_feedback()), 2)

    def test_feedback_ids_increment(self):
        first = self.db.create_feedback("a", 2)
        second = self.db.create_feedback("b", 3)
        self.assertGreater(second.id, first.id)

    def test_soundboards(self):
        self.assertEqual(self.db.list_soundboards(), [])
        self.db.create_soundboard("halo", "https://cdn.test/1.mp3", "1.mp3")
        latest = self.db.create_soundboard("apa kabar", "https://cdn.test/2.mp3", "2.mp3")
        listed = self.db.list_soundboards()
        self.assertEqual([s.id for s in listed][0], latest.id)
        self.assertEqual(listed[0].as_dict()["audioUrl"], "https://cdn.test/2.mp3")
        self.assertEqual(listed[0].as_dict()["fileName"], "2.mp3")
        with self.assertRaises(ValidationError):
            self.db.create_soundboard("teks", "", "3.mp3")


class InMemoryDbClientTests(GatewayContract, unittest.TestCase):
    def make_db(self):
        return InMemoryDbClient()

    def test_reset(self):
        self.db.create_feedback("ok", 3)
        self.db.update_profile("Budi")
        self.db.reset()
        self.assertEqual(self.db.list_feedback(), [])
        with self.assertRaises(NotFoundError):
            self.db.get_profile()


class SqlDbClientTests(GatewayContract, unittest.TestCase):
    """
    Uses SQLite via SQLAlchemy URL for fast/local testing of the SQL client logic.
    """

    def make_db(self):
        return SqlDbClient("sqlite+pysqlite:///:memory:")

    def test_profile_updates_never_insert_second_row(self):
        self.db.update_profile("Budi")
        self.db.update_profile("Budi Santoso")
        with self.db.Session() as session:
            count = session.execute(select(func.count()).select_from(ProfileRow)).scalar_one()
        self.assertEqual(count, 1)

    def test_requires_url(self):
        with self.assertRaises(ValueError):
            SqlDbClient("")

    def test_concurrent_writes_share_memory_database(self):
        errors = _write_feedback_concurrently(self.db)
        self.assertEqual(errors, [])
        self.assertEqual(len(self.db.list_feedback()), 400)

    def test_identity_email_is_unique_in_database(self):
        # A row registered by a concurrent request that the pre-insert check missed.
        with self.db.Session.begin() as session:
            session.add(
                HistoryRow(
                    id=uuid.uuid4().hex,
                    title="Budi",
                    identity_email="budi@example.com",
                    created_at=datetime.now(timezone.utc),
                )
            )
        with self.assertRaises(ConflictError):
            self.db.create_identity("budi@example.com", "Budi lagi")
        with self.db.Session() as session:
            count = session.execute(select(func.count()).select_from(HistoryRow)).scalar_one()
        self.assertEqual(count, 1)

    def test_free_form_entries_may_share_an_identity_email(self):
        self.db.create_identity("ani@example.com", "Ani")
        self.db.create_entry("Catatan", "pesan", email="ani@example.com")
        self.assertEqual(len(self.db.get_history("ani@example.com")), 2)

    def test_failed_message_delete_keeps_history(self):
        self.db.create_identity("dedi@example.com", "Dedi")
        self.db.attach_message("dedi@example.com", "satu", True)
        execute = Session.execute

        def fail_on_delete(session, statement, *args, **kwargs):
            if isinstance(statement, Delete):
                raise OperationalError("DELETE FROM message", {}, Exception("disk I/O error"))
            return execute(session, statement, *args, **kwargs)

        with patch.object(Session, "execute", new=fail_on_delete):
            with self.assertRaises(InternalError):
                self.db.delete_history("dedi@example.com")

        (identity,) = self.db.get_history("dedi@example.com")
        self.assertEqual([m.message for m in identity.messages], ["satu"])


class FileSqlDbClientTests(GatewayContract, unittest.TestCase):
    """Same behaviour against a file-backed SQLite database with a real connection pool."""

    def make_db(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        db = SqlDbClient("sqlite:///" + os.path.join(tmp.name, "capstone.db"))
        self.addCleanup(db.engine.dispose)
        return db

    def test_concurrent_writes(self):
        errors = _write_feedback_concurrently(self.db)
        self.assertEqual(errors, [])
        self.assertEqual(len(self.db.list_feedback()), 400)


if __name__ == "__main__":
    unittest.main()
