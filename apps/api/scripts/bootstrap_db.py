"""Create database schema and seed a demo funnel project for development."""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone

from app.db.session import dispose_engine, engine, session_scope
from app.models import FunnelProject
from app.models.base import Base

PROJECTS = [
	{
		"id": "demo-project",
		"user_id": "demo-user",
		"name": "Demo Webinar Funnel",
	},
]


async def create_schema() -> None:
	"""Create the database schema if it does not already exist."""

	async with engine.begin() as conn:
		await conn.run_sync(Base.metadata.create_all)


async def seed_projects() -> None:
	"""Insert or update demo funnel projects."""

	async with session_scope() as session:
		for project_data in PROJECTS:
			project = await session.get(FunnelProject, project_data["id"])
			if project is None:
				session.add(
					FunnelProject(
						id=project_data["id"],
						user_id=project_data["user_id"],
						name=project_data["name"],
						created_at=datetime.now(timezone.utc),
					)
				)
			else:
				project.user_id = project_data["user_id"]
				project.name = project_data["name"]
				session.add(project)


async def main() -> None:
	await create_schema()
	await seed_projects()
	await dispose_engine()
	print("Database schema ensured and demo project seeded.")


if __name__ == "__main__":
	asyncio.run(main())
