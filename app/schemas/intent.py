"""Structured intent extracted from a customer recording transcript."""

from pydantic import BaseModel, ConfigDict, Field, field_validator

SENTIMENTS = ("positive", "neutral", "negative")
PRIORITIES = ("low", "medium", "high", "urgent")

_FALSY_STRINGS = {"", "false", "no", "none", "null", "n/a", "0"}


class Intent(BaseModel):
    """Every field has a default so consumers never need to nil-check.

    Validators coerce loose LLM output (``"Positive"``, ``"yes, before 5pm"``,
    a single string where a list was asked for) into the canonical shape.
    """

    model_config = ConfigDict(extra="ignore")

    sentiment: str = "neutral"
    priority: str = "medium"
    time_sensitive: bool = False
    conditions: list[str] = Field(default_factory=list)
    concerns: list[str] = Field(default_factory=list)
    instructions: list[str] = Field(default_factory=list)

    @field_validator("sentiment", mode="before")
    @classmethod
    def _coerce_sentiment(cls, value):
        value = str(value or "").strip().lower()
        return value if value in SENTIMENTS else "neutral"

    @field_validator("priority", mode="before")
    @classmethod
    def _coerce_priority(cls, value):
        value = str(value or "").strip().lower()
        return value if value in PRIORITIES else "medium"

    @field_validator("time_sensitive", mode="before")
    @classmethod
    def _coerce_time_sensitive(cls, value):
        if isinstance(value, bool):
            return value
        if value is None:
            return False
        if isinstance(value, (int, float)):
            return bool(value)
        if isinstance(value, str):
            return value.strip().lower() not in _FALSY_STRINGS
        if isinstance(value, (list, tuple, dict)):
            return bool(value)
        return False

    @field_validator("conditions", "concerns", "instructions", mode="before")
    @classmethod
    def _ordered_set(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        elif isinstance(value, dict):
            value = list(value.values())
        elif not isinstance(value, (list, tuple)):
            value = [value]

        seen: set[str] = set()
        items: list[str] = []
        for item in value:
            if item is None:
                continue
            text = str(item).strip()
            if text and text.lower() not in seen:
                seen.add(text.lower())
                items.append(text)
        return items
