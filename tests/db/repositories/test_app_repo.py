"""Tests for AppRepository."""

from asc_crash_fetcher.db.repositories import AppRepository


class TestUpsertApp:
    """Tests for AppRepository.upsert_app."""

    async def test_creates_app(self, db_session):
        """First call creates the row."""
        # Arrange
        repo = AppRepository(db_session)

        # Act
        app = await repo.upsert_app("com.example.myapp", asc_id="1483799000", name="My App")

        # Assert
        assert app.id is not None
        assert app.bundle_id == "com.example.myapp"
        assert app.asc_id == "1483799000"
        assert await repo.count() == 1

    async def test_refreshes_existing_app(self, db_session):
        """A second call updates remote id and name in place."""
        # Arrange
        repo = AppRepository(db_session)
        created = await repo.upsert_app("com.example.myapp")

        # Act
        updated = await repo.upsert_app("com.example.myapp", asc_id="42", name="Renamed")

        # Assert
        assert updated.id == created.id
        assert updated.asc_id == "42"
        assert updated.name == "Renamed"
        assert await repo.count() == 1

    async def test_missing_values_do_not_erase(self, db_session):
        """None leaves known values untouched."""
        repo = AppRepository(db_session)
        await repo.upsert_app("com.example.myapp", asc_id="42", name="My App")

        app = await repo.upsert_app("com.example.myapp")

        assert app.asc_id == "42"
        assert app.name == "My App"


class TestAppQueries:
    """Tests for AppRepository lookups."""

    async def test_get_by_bundle_id(self, db_session):
        repo = AppRepository(db_session)
        await repo.upsert_app("com.example.myapp")

        assert (await repo.get_by_bundle_id("com.example.myapp")) is not None
        assert (await repo.get_by_bundle_id("com.example.other")) is None

    async def test_list_apps_sorted(self, db_session):
        repo = AppRepository(db_session)
        await repo.upsert_app("com.example.zeta")
        await repo.upsert_app("com.example.alpha")

        apps = await repo.list_apps()

        assert [a.bundle_id for a in apps] == ["com.example.alpha", "com.example.zeta"]
