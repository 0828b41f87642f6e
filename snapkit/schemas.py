from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

Tone = Literal["playful", "professional", "minimal", "inspirational", "funny"]


class GenerationConfig(BaseModel):
    """Options the user picks before generating a kit."""
    tone: Tone = Field("professional", description="Voice used across every asset.")
    platforms: List[str] = Field(default_factory=lambda: ["Instagram"], description="Target platforms, e.g. Instagram, TikTok.")
    include_emoji: bool = Field(True, description="Whether captions may use emojis.")
    language: str = Field("English", description="Output language.")

    @field_validator("platforms")
    @classmethod
    def _strip_platforms(cls, v: List[str]) -> List[str]:
        return [p.strip() for p in v if p and p.strip()]


class Analysis(BaseModel):
    summary: str
    mood: str
    keywords: List[str]


class Caption(BaseModel):
    platform: str
    hook: str
    text: str
    cta: str


class HashtagSet(BaseModel):
    category: str
    tags: List[str]


class Scene(BaseModel):
    timestamp: str
    visual: str
    audio: str


class VideoScript(BaseModel):
    title: str
    hook: str
    scene_breakdown: List[Scene]
    cta: str


class Scripts(BaseModel):
    tiktok: VideoScript
    shorts: VideoScript


class SocialKitResult(BaseModel):
    """Closed shape of a generated social media kit."""
    analysis: Analysis
    captions: List[Caption]
    hashtags: List[HashtagSet]
    scripts: Scripts
    linkedin_post: str
    twitter_thread: List[str]


class ApiKeyUpdate(BaseModel):
    api_key: Optional[str] = None


class GenerateResponse(BaseModel):
    id: int
    result: SocialKitResult
    api_key_source: Literal["own", "pool"]
    free_generations_remaining: int


class FreeGenerationStats(BaseModel):
    used: int
    limit: int
    remaining: int
    exhausted_at: Optional[str] = None
    has_own_key: bool
    can_use_free_tier: bool
