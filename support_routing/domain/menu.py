import unicodedata

from support_routing.domain.enums import EscalationReason

# Numbers match the order of the default greeting menu.
MENU_OPTIONS: tuple[tuple[str, str], ...] = (
    ("1", "Laboratório"),
    ("2", "Comercial"),
    ("3", "Financeiro"),
    ("4", "Administrativo"),
)

MENU_ALIASES: dict[str, str] = {
    # Laboratório
    "1": "laboratorio",
    "lab": "laboratorio",
    "laboratorio": "laboratorio",
    "laudo": "laboratorio",
    "analise": "laboratorio",
    "qualidade": "laboratorio",
    "tecnico": "laboratorio",
    # Comercial
    "2": "comercial",
    "comercial": "comercial",
    "vendas": "comercial",
    "venda": "comercial",
    "pedido": "comercial",
    "cotacao": "comercial",
    "compra": "comercial",
    "preco": "comercial",
    # Financeiro
    "3": "financeiro",
    "financeiro": "financeiro",
    "financ": "financeiro",
    "boleto": "financeiro",
    "nota": "financeiro",
    "nf": "financeiro",
    "pagamento": "financeiro",
    "fatura": "financeiro",
    "cobranca": "financeiro",
    # Administrativo, the usual root department
    "4": "administrativo",
    "adm": "administrativo",
    "admin": "administrativo",
    "administrativo": "administrativo",
    "rh": "administrativo",
    "recursos humanos": "administrativo",
    "fornecedor": "administrativo",
    "geral": "administrativo",
}

_AFFIRMATIVE = {"sim", "s", "yes", "y", "1"}
_NEGATIVE = {"nao", "n", "no", "0"}


def normalize_input(raw: str) -> str:
    decomposed = unicodedata.normalize("NFD", raw.strip().lower())
    return "".join(char for char in decomposed if not unicodedata.combining(char))


def resolve_menu_choice(raw: str) -> str | None:
    """Map a customer reply to a department slug, or None if unrecognised."""
    return MENU_ALIASES.get(normalize_input(raw))


def parse_confirmation(raw: str) -> bool | None:
    normalized = normalize_input(raw).strip(" .!")
    if normalized in _AFFIRMATIVE:
        return True
    if normalized in _NEGATIVE:
        return False
    return None


def menu_text() -> str:
    return "\n".join(f"{number} - {label}" for number, label in MENU_OPTIONS)


def default_greeting(company_name: str) -> str:
    return f"Hello! Welcome to {company_name}!\n\nHow can we help you?\n{menu_text()}"


def invalid_choice_text() -> str:
    numbers = [number for number, _ in MENU_OPTIONS]
    return f"Invalid option. Please choose {', '.join(numbers[:-1])} or {numbers[-1]}."


def suggestion_text(department_name: str) -> str:
    return (
        f"We noticed you were previously helped by *{department_name}*.\n\n"
        "Would you like to be connected to the same team?\n\n"
        "Reply *YES* to confirm or *NO* to start a new request."
    )


def suggestion_declined_text() -> str:
    return f"Understood! Back to the main menu...\n\nChoose an option:\n{menu_text()}"


def suggestion_expired_text() -> str:
    return f"Time's up! Back to the main menu...\n\nChoose an option:\n{menu_text()}"


def connecting_text(agent_name: str, department_name: str) -> str:
    return f"Connecting you with *{agent_name} - {department_name}*... Please hold on a moment."


_ESCALATION_TEXTS: dict[EscalationReason, str] = {
    EscalationReason.TIMEOUT: "Waiting time exceeded. Redirecting you to our administrative team...",
    EscalationReason.OFFLINE: (
        "No agent is available in this department. "
        "Redirecting you to our administrative team..."
    ),
}


def escalation_text(reason: EscalationReason) -> str:
    return _ESCALATION_TEXTS[reason]


def all_agents_unavailable_text() -> str:
    return (
        "All of our agents are unavailable right now. "
        "Your message has been registered and we will get back to you soon."
    )


def closing_text() -> str:
    return "This conversation has been closed. Send a new message any time to start again."
