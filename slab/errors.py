class OverBudgetError(ValueError):
    """Raised when a prompt cannot fit the token budget even after pruning."""

    def __init__(self, estimate: int, budget: int):
        self.estimate = estimate
        self.budget = budget
        super().__init__(f"Prompt needs ~{estimate} tokens but the budget is {budget}")


class TransportError(RuntimeError):
    """The inference service is unreachable or dropped the response."""

    def __init__(self, message: str, partial: str = ""):
        self.partial = partial
        super().__init__(message)


class ModelNotFoundError(LookupError):
    def __init__(self, model: str):
        self.model = model
        super().__init__(f"Model not found: {model}. Pull it with `ollama pull {model}`")


class TemplateError(ValueError):
    pass
