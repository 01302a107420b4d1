from uuid import UUID


def conversation_channel(conversation_id: UUID) -> str:
    return f"conversation:{conversation_id}"


def agent_queue_channel(agent_id: UUID) -> str:
    return f"agent:{agent_id}:queue"


def department_channel(department_id: UUID) -> str:
    return f"department:{department_id}"


def company_channel(company_id: UUID) -> str:
    return f"company:{company_id}"
