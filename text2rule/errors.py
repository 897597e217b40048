from __future__ import annotations


class Text2RuleError(Exception):
    pass


class ConfigurationError(Text2RuleError):
    """A prompt template, stage option or credential is missing or invalid."""


class OracleCommunicationError(Text2RuleError):
    """Transport or timeout failure while talking to the text-generation service."""


class ParseError(Text2RuleError):
    """An oracle response does not carry the expected JSON shape."""


class ConsistencyFailure(Text2RuleError):
    def __init__(self, stage: str, score: float, threshold: float, attempts: int) -> None:
        super().__init__(
            f"{stage} consistency {score:.2f} stayed below threshold {threshold} "
            f"after {attempts} attempt(s)"
        )
        self.stage = stage
        self.score = score
        self.threshold = threshold
        self.attempts = attempts


class StructuralError(Text2RuleError):
    """The tree, or a node a stage depends on, is missing."""


class InputRejected(Text2RuleError):
    def __init__(self, issues: list[str] | None = None) -> None:
        self.issues = list(issues or [])
        detail = "; ".join(self.issues) if self.issues else "no details"
        super().__init__(f"Statement rejected by validation: {detail}")
