import os
import pytest

from library import Library


@pytest.fixture
def lib(tmp_path, request):
    # Unique database file and storage directory per test
    db_file = str(tmp_path / f"test_{request.node.name}.db")
    lib = Library(db_file=db_file, storage_dir=str(tmp_path / "storage"))
    yield lib
    lib.close()
    if os.path.exists(db_file):
        os.remove(db_file)
