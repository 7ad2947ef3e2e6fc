from __future__ import annotations

import uuid
from typing import Any, Dict, List
from unittest import IsolatedAsyncioTestCase

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from mealplan import db
from mealplan.models import Base, Theme, UserProfile


class DatabaseTestCase(IsolatedAsyncioTestCase):
    """In-memory database bound as the application's session factory."""

    async def asyncSetUp(self):
        self.engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self.Session = async_sessionmaker(self.engine, expire_on_commit=False)
        db.bind_sessionmaker(self.Session)

    async def asyncTearDown(self):
        db.bind_sessionmaker(None)
        await self.engine.dispose()

    async def seed_profile(self, user_id: str = "user-1", **overrides: Any) -> UserProfile:
        values: Dict[str, Any] = {
            "id": user_id,
            "email": f"{user_id}@example.com",
            "display_name": "Sam",
            "dietary_prefs": ["no_restrictions"],
            "prep_style": "day_of",
            "meal_types": ["breakfast", "lunch", "dinner", "snack"],
            "email_notifications": True,
        }
        values.update(overrides)
        async with self.Session() as session:
            profile = UserProfile(**values)
            session.add(profile)
            await session.commit()
            return profile

    async def seed_themes(self, *themes_data: Dict[str, Any]) -> List[Theme]:
        themes: List[Theme] = []
        async with self.Session() as session:
            for theme_data in themes_data:
                values = {
                    "id": uuid.uuid4(),
                    "display_name": theme_data["name"].replace("_", " ").title(),
                    "description": "",
                    "compatible_diets": [],
                    "incompatible_diets": [],
                    "peak_seasons": [],
                    "is_active": True,
                }
                values.update(theme_data)
                theme = Theme(**values)
                session.add(theme)
                themes.append(theme)
            await session.commit()
        return themes
