from pydantic import BaseModel, Field


class GenerationParams(BaseModel):
    """Payload stored with a queued request and replayed to the backend."""

    prompt_tags: str = Field(min_length=1)
    model_name: str = Field(min_length=1)
    lora_names: list[str] = []
    lora_weights: list[float] | float | None = None
    aspect: int = 1
    seed: int
    cfg: float = 6.0
    user_id: str | None = None
    credit_cost: int = Field(default=0, ge=0)
    is_unlimited: bool = False


class EnqueueRequest(BaseModel):
    prompt_tags: str = Field(min_length=1)
    model_name: str = Field(min_length=1)
    lora_names: list[str] = []
    lora_weights: list[float] | float | None = None
    aspect: int = 1
    seed: int | None = None
    cfg: float = 6.0
    user_id: str | None = None
    consume_credits: bool = True


class EnqueueResponse(BaseModel):
    request_id: str
    status: str


class GenerationResult(BaseModel):
    image: str
    content_type: str = "image/png"


class StatusResponse(BaseModel):
    request_id: str
    status: str
    result: GenerationResult | None = None
    error: str | None = None
    position: int | None = None
    estimated_seconds: float | None = None


class CreditsConfig(BaseModel):
    credit_cost: int = Field(default=1, ge=0)
    daily_free_credits: int = Field(default=10, ge=0)
    max_free_credit_limit: int = Field(default=50, ge=0)


class CreditsConfigUpdate(CreditsConfig):
    user_id: str


class CreditsResponse(BaseModel):
    enabled: bool
    config: CreditsConfig | None = None
    credits_free: int | None = None


class DailyGrantResponse(BaseModel):
    user_id: str
    credits_free: int | None = None
