from typing import Annotated, Any

from pydantic import AfterValidator, BaseModel, ConfigDict, StrictBool, StrictFloat, StrictInt, StrictStr, model_validator
from pydantic.alias_generators import to_camel

from .config import PROFILE_MAX_AGE, PROFILE_MIN_AGE


def _required_text(value: str) -> str:
    v = value.strip()
    if not v:
        raise ValueError("must not be blank")
    return v


NonBlankStr = Annotated[StrictStr, AfterValidator(_required_text)]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class StartMatchRequest(CamelModel):
    trip_card_id: NonBlankStr
    preferred_gender: StrictStr | None = None
    preferred_age_min: StrictInt | StrictFloat | None = None
    preferred_age_max: StrictInt | StrictFloat | None = None
    preferred_languages: list[StrictStr] | None = None
    city_scope_mode: StrictStr | None = None
    preferences: dict[str, Any] | None = None

    @model_validator(mode="after")
    def _age_range(self) -> "StartMatchRequest":
        for age in (self.preferred_age_min, self.preferred_age_max):
            if age is not None and not (PROFILE_MIN_AGE <= age <= PROFILE_MAX_AGE):
                raise ValueError(f"preferred ages must be between {PROFILE_MIN_AGE} and {PROFILE_MAX_AGE}")
        if (
            self.preferred_age_min is not None
            and self.preferred_age_max is not None
            and self.preferred_age_min > self.preferred_age_max
        ):
            raise ValueError("preferredAgeMin must not exceed preferredAgeMax")
        return self

    def explicit_preferences(self) -> dict[str, Any]:
        """Preference fields the caller actually sent, keyed by wire name."""
        return {
            to_camel(name): getattr(self, name)
            for name in ("preferred_gender", "preferred_age_min", "preferred_age_max", "preferred_languages", "city_scope_mode")
            if name in self.model_fields_set
        }


class RequestIdBody(CamelModel):
    request_id: NonBlankStr


class CancelMatchRequest(CamelModel):
    request_id: StrictStr | None = None


class GetPartnerRequest(CamelModel):
    session_id: NonBlankStr
    self_profile_id: StrictStr | None = None


class AttachConversationRequest(CamelModel):
    session_id: NonBlankStr
    conversation_id: NonBlankStr
    force: StrictBool = False
