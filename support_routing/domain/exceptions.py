from support_routing.domain.enums import FlowAction, FlowState


class InvalidFlowTransition(ValueError):
    def __init__(self, current: FlowState, action: FlowAction) -> None:
        super().__init__(
            f"Cannot apply action '{action.value}' from flow state '{current.value}'."
        )
        self.current = current
        self.action = action
