"""Database seed script: creates a demo agent with leads and a schedule.

Run: python -m scripts.seed
"""

import asyncio
import sys
import os

# Ensure project root is in path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

LEAD_MODEL_ID = "model-lead"
POST_MODEL_ID = "model-post"

DEMO_DEFINITION = {
    "models": [
        {
            "id": LEAD_MODEL_ID,
            "name": "Lead",
            "fields": [
                {"name": "name", "type": "text"},
                {"name": "company", "type": "text"},
                {"name": "status", "type": "text"},
                {"name": "company_info", "type": "text", "description": "What the company does"},
                {"name": "summary", "type": "text", "description": "Two sentence pitch angle"},
                {"name": "posts", "type": "reference", "referenceType": "to_many", "referencesModel": "Post"},
            ],
        },
        {
            "id": POST_MODEL_ID,
            "name": "Post",
            "fields": [
                {"name": "title", "type": "text"},
                {"name": "content", "type": "text"},
                {"name": "publish_date", "type": "date"},
                {"name": "lead", "type": "reference", "referencesModel": "Lead"},
            ],
        },
    ],
    "actions": [
        {
            "id": "action-research",
            "name": "Research lead",
            "modelId": LEAD_MODEL_ID,
            "steps": [
                {
                    "name": "Look up company",
                    "type": "web_search",
                    "inputFields": ["company"],
                    "outputFields": ["company_info"],
                },
                {
                    "name": "Summarize",
                    "type": "ai_reasoning",
                    "inputFields": ["name", "company_info"],
                    "outputFields": ["summary"],
                    "config": {"prompt": "Write a pitch angle for {name} given: {company_info}"},
                },
            ],
        },
        {
            "id": "action-posts",
            "name": "Draft posts",
            "modelId": LEAD_MODEL_ID,
            "steps": [
                {
                    "name": "Draft posts",
                    "type": "ai_reasoning",
                    "inputFields": ["summary"],
                    "outputFields": ["posts"],
                    "config": {"prompt": "Draft two short social posts based on: {summary}"},
                },
            ],
        },
    ],
    "connections": [],
}

DEMO_LEADS = [
    ("Ada Lovelace", "Analytical Engines Ltd"),
    ("Grace Hopper", "Compiler Works"),
    ("Alan Turing", "Bletchley Labs"),
]


async def seed(session_factory=None, create_tables: bool = True) -> dict:
    """Seed the database with a demo agent, leads and a recurring schedule.

    Returns:
        Dict with the created ``agent_id`` and ``schedule_id``
    """
    from db.database import get_session_factory, init_db
    from db.models import Agent, AgentRecord, Schedule, ScheduleStep
    from sqlalchemy import select

    if create_tables:
        await init_db()

    session_factory = session_factory or get_session_factory()
    async with session_factory() as db:
        result = await db.execute(select(Agent).where(Agent.name == "Demo Outreach Agent"))
        agent = result.scalar_one_or_none()
        if agent:
            print(f"[seed] Agent exists: {agent.name}")
            schedule = (await db.execute(select(Schedule).where(Schedule.agent_id == agent.id))).scalars().first()
            return {"agent_id": agent.id, "schedule_id": schedule.id if schedule else None}

        agent = Agent(name="Demo Outreach Agent", definition=DEMO_DEFINITION)
        db.add(agent)
        await db.flush()
        print(f"[seed] Created agent: {agent.name} ({agent.id})")

        for name, company in DEMO_LEADS:
            db.add(AgentRecord(
                model_id=LEAD_MODEL_ID,
                data={"name": name, "company": company, "status": "new", "summary": "", "posts": []},
            ))

        schedule = Schedule(agent_id=agent.id, name="Nightly outreach", mode="recurring", interval_hours=24)
        db.add(schedule)
        await db.flush()
        db.add_all([
            ScheduleStep(
                schedule_id=schedule.id,
                order=0,
                model_id=LEAD_MODEL_ID,
                action_id="action-research",
                model_name="Lead",
                action_name="Research lead",
                query={"filters": [{"field": "summary", "operator": "is_empty"}], "logic": "AND"},
            ),
            ScheduleStep(
                schedule_id=schedule.id,
                order=1,
                model_id=LEAD_MODEL_ID,
                action_id="action-posts",
                model_name="Lead",
                action_name="Draft posts",
                query={"filters": [{"field": "posts", "operator": "is_empty"}], "logic": "AND"},
            ),
        ])

        await db.commit()
        print(f"[seed] Created schedule: {schedule.name} ({schedule.id})")
        print("[seed] Database seeded successfully!")
        return {"agent_id": agent.id, "schedule_id": schedule.id}


if __name__ == "__main__":
    asyncio.run(seed())
