from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from support_routing.domain.enums import AgentOnlineStatus
from support_routing.infra.db.models import Agent, Company, Department

DEMO_COMPANY_NAME = "Demo Laboratories"

DEMO_DEPARTMENTS: list[dict[str, str | int | bool]] = [
    {"slug": "laboratorio", "name": "Laboratório", "response_timeout_minutes": 3, "is_root": False},
    {"slug": "comercial", "name": "Comercial", "response_timeout_minutes": 3, "is_root": False},
    {"slug": "financeiro", "name": "Financeiro", "response_timeout_minutes": 5, "is_root": False},
    {"slug": "administrativo", "name": "Administrativo", "response_timeout_minutes": 10, "is_root": True},
]

DEMO_AGENTS: list[dict[str, str]] = [
    {"display_name": "Ana Souza", "department_slug": "laboratorio"},
    {"display_name": "Bruno Lima", "department_slug": "comercial"},
    {"display_name": "Carla Dias", "department_slug": "comercial"},
    {"display_name": "Diego Alves", "department_slug": "financeiro"},
    {"display_name": "Elisa Rocha", "department_slug": "administrativo"},
]


async def seed_demo_directory(session: AsyncSession) -> Company:
    """Create the demo company, its departments and agents if they are missing."""
    company = (
        await session.execute(select(Company).where(Company.name == DEMO_COMPANY_NAME))
    ).scalar_one_or_none()
    if company is None:
        company = Company(name=DEMO_COMPANY_NAME)
        session.add(company)
        await session.flush()

    department_rows = await session.execute(
        select(Department).where(Department.company_id == company.id)
    )
    departments = {department.slug: department for department in department_rows.scalars().all()}

    for item in DEMO_DEPARTMENTS:
        slug = str(item["slug"])
        if slug in departments:
            continue
        department = Department(
            company_id=company.id,
            slug=slug,
            name=str(item["name"]),
            response_timeout_minutes=int(item["response_timeout_minutes"]),
            is_root=bool(item["is_root"]),
        )
        session.add(department)
        departments[slug] = department
    await session.flush()

    agent_rows = await session.execute(
        select(Agent.display_name).where(Agent.company_id == company.id)
    )
    existing_names = set(agent_rows.scalars().all())

    for item in DEMO_AGENTS:
        if item["display_name"] in existing_names:
            continue
        session.add(
            Agent(
                company_id=company.id,
                department_id=departments[item["department_slug"]].id,
                display_name=item["display_name"],
                online_status=AgentOnlineStatus.OFFLINE,
            )
        )
    await session.flush()
    return company
