from __future__ import annotations


class DimensionMismatch(ValueError):
    """Shapes of terms, blocks or vectors disagree."""


class InvalidKeyError(KeyError):
    """An unsupported symbolic accessor was requested."""

    def __init__(self, key: object, valid: tuple[str, ...]) -> None:
        self.key = key
        self.valid = valid
        super().__init__(f"Invalid key {key!r}. Valid keys: {', '.join(valid)}")

    def __str__(self) -> str:
        return str(self.args[0])


class NotFittedError(RuntimeError):
    """An estimate was requested before the model was fit."""

    def __init__(self, what: str = "This quantity") -> None:
        super().__init__(f"{what} is not available until the model is fit; call fit() first")


class StepHalvingError(RuntimeError):
    """PIRLS step-halving was exhausted with no accepted state to fall back to."""


class ConvergenceWarning(UserWarning):
    pass


class StepHalvingWarning(UserWarning):
    pass
