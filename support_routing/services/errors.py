from uuid import UUID


class ConversationNotFoundError(LookupError):
    def __init__(self, conversation_id: UUID) -> None:
        super().__init__(f"Conversation '{conversation_id}' not found")
        self.conversation_id = conversation_id


class DepartmentNotFoundError(LookupError):
    def __init__(self, department_ref: UUID | str) -> None:
        super().__init__(f"Department '{department_ref}' not found or inactive")
        self.department_ref = department_ref


class AgentNotFoundError(LookupError):
    def __init__(self, agent_id: UUID) -> None:
        super().__init__(f"Agent '{agent_id}' not found")
        self.agent_id = agent_id


class RootDepartmentMissingError(LookupError):
    def __init__(self, company_id: UUID) -> None:
        super().__init__(f"Company '{company_id}' has no active root department")
        self.company_id = company_id


class CompanyNotFoundError(LookupError):
    def __init__(self, company_id: UUID) -> None:
        super().__init__(f"Company '{company_id}' not found")
        self.company_id = company_id


class AgentNotInDepartmentError(ValueError):
    def __init__(self, agent_id: UUID, department_id: UUID | None) -> None:
        super().__init__(
            f"Agent '{agent_id}' does not belong to department '{department_id}'"
        )
        self.agent_id = agent_id
        self.department_id = department_id


class ConversationArchivedError(ValueError):
    def __init__(self, conversation_id: UUID) -> None:
        super().__init__(f"Conversation '{conversation_id}' is archived")
        self.conversation_id = conversation_id
