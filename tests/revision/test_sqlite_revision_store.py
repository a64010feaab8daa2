"""SQLite-specific revision store behaviour."""

import pytest

from appspine.core.errors import CorruptRevisionError, RevisionConflict
from appspine.core.models import ApplicationSpec
from appspine.render.definitions import builtin_definitions
from appspine.render.renderer import Renderer
from appspine.revision.sqlite import SQLiteRevisionStore
from appspine.revision.store import HOLDER_STATUS
from tests._support.apps import WEB, frontend


def render(image="nginx:1.27"):
    spec = ApplicationSpec.model_validate({"components": [frontend(image)]})
    return Renderer(builtin_definitions()).render(WEB, spec)


class TestPersistence:
    def test_survives_reopen(self, tmp_path):
        path = str(tmp_path / "revisions.db")
        store = SQLiteRevisionStore(path)
        rev = store.create_next(WEB, render(), generation=1, expected_number=0)
        store.set_reference(WEB, HOLDER_STATUS, 1)
        store.close()

        reopened = SQLiteRevisionStore(path)
        assert reopened.current_number(WEB) == 1
        assert reopened.get_latest(WEB).fingerprint == rev.fingerprint
        assert reopened.references(WEB) == {HOLDER_STATUS: 1}
        reopened.close()

    def test_counter_survives_reopen_after_delete(self, tmp_path):
        path = str(tmp_path / "revisions.db")
        store = SQLiteRevisionStore(path)
        store.create_next(WEB, render("a"), generation=1, expected_number=0)
        store.delete(WEB, 1)
        store.close()

        reopened = SQLiteRevisionStore(path)
        rev = reopened.create_next(WEB, render("b"), generation=2, expected_number=1)
        assert rev.number == 2
        reopened.close()

    def test_failed_transaction_rolls_back(self):
        store = SQLiteRevisionStore()
        store.create_next(WEB, render("a"), generation=1, expected_number=0)
        with pytest.raises(RevisionConflict):
            store.create_next(WEB, render("b"), generation=1, expected_number=0)
        # The connection is usable and nothing half-written remains.
        assert store.current_number(WEB) == 1
        assert len(store.list_revisions(WEB)) == 1
        store.close()


class TestCorruption:
    def test_undecodable_row(self):
        store = SQLiteRevisionStore()
        store.create_next(WEB, render(), generation=1, expected_number=0)
        store._conn.execute("UPDATE appspine_revisions SET body = '{not json'")
        with pytest.raises(CorruptRevisionError) as exc_info:
            store.get_latest(WEB)
        assert exc_info.value.context.app == "default/web"
        assert exc_info.value.retryable is False
        store.close()
