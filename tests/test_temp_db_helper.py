import os
import tempfile
import unittest

from tests.helpers.temp_db import TempDbSandbox, assert_safe_temp_db_path


class TempDbHelperTest(unittest.TestCase):
    def test_temp_db_create_and_cleanup(self) -> None:
        sandbox = TempDbSandbox(prefix="temp_db_sanity")
        db_path = sandbox.db_path
        temp_dir = sandbox.temp_dir

        self.assertTrue(os.path.exists(temp_dir))
        self.assertTrue(os.path.realpath(db_path).startswith(os.path.realpath(tempfile.gettempdir())))

        sandbox.create_schema()
        db = sandbox.connect()
        try:
            db.execute("INSERT INTO price_lists (store_id, name) VALUES ('s', 'ok')")
            db.commit()
            row = db.execute("SELECT COUNT(*) AS total FROM price_lists").fetchone()
            self.assertEqual(int(row["total"]), 1)
        finally:
            db.close()

        sandbox.cleanup()
        self.assertFalse(os.path.exists(db_path))
        self.assertFalse(os.path.exists(temp_dir))

    def test_disallow_workspace_paths(self) -> None:
        workspace_db = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "pedidos_test.db")
        with self.assertRaises(ValueError):
            assert_safe_temp_db_path(workspace_db)


if __name__ == "__main__":
    unittest.main()
