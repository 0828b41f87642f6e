import base64
import json

from openai import OpenAI
from pydantic import ValidationError

from .config import GEMINI_BASE_URL, GENERATION_MODEL, GENERATION_TIMEOUT
from .errors import MalformedResponse
from .schemas import GenerationConfig, SocialKitResult


USER_PROMPT = "Generate a comprehensive social media kit for this image."

RESULT_SHAPE = """{
  "analysis": {"summary": str, "mood": str, "keywords": [str]},
  "captions": [{"platform": str, "hook": str, "text": str, "cta": str}],
  "hashtags": [{"category": "Reach (High Vol)" | "Niche (Targeted)" | "Community (Low Vol)", "tags": [str]}],
  "scripts": {
    "tiktok": {"title": str, "hook": str, "scene_breakdown": [{"timestamp": str, "visual": str, "audio": str}], "cta": str},
    "shorts": {"title": str, "hook": str, "scene_breakdown": [{"timestamp": str, "visual": str, "audio": str}], "cta": str}
  },
  "linkedin_post": str,
  "twitter_thread": [str]
}"""


def get_client(api_key: str) -> OpenAI:
    if not api_key:
        raise RuntimeError("No API key supplied for generation")
    # max_retries=0: rate limits are handled by key rotation, not by the SDK
    return OpenAI(api_key=api_key, base_url=GEMINI_BASE_URL, timeout=GENERATION_TIMEOUT, max_retries=0)


def build_system_prompt(config: GenerationConfig) -> str:
    platforms = ", ".join(config.platforms) or "Instagram"
    return (
        "You are an expert Social Media Manager and Content Strategist.\n"
        "Your goal is to analyze the provided image and generate a complete social media kit.\n\n"
        "Configuration:\n"
        f"- Tone: {config.tone}\n"
        f"- Platforms: {platforms}\n"
        f"- Include Emojis: {str(config.include_emoji).lower()}\n"
        f"- Language: {config.language}\n\n"
        "IMPORTANT RULES:\n"
        "1. Captions must be SHORT and EFFECTIVE. Focus on viral hooks and punchy 1-2 sentence bodies.\n"
        "2. Hooks must stop the scroll.\n"
        "3. Video scripts should be fast-paced.\n\n"
        "Deliverables:\n"
        "1. Visual analysis of the image.\n"
        "2. 3 distinct caption variations (Instagram, Generic, Story).\n"
        "3. 3 sets of hashtags (High volume, Niche, Community).\n"
        "4. Video scripts for TikTok and YouTube Shorts based on the image context.\n"
        "5. A short and professional LinkedIn post.\n"
        "6. A Twitter/X thread (3-5 tweets).\n\n"
        "Return STRICT JSON with exactly this shape, no markdown:\n"
        f"{RESULT_SHAPE}"
    )


def parse_result(text: str) -> SocialKitResult:
    """
    Validates the model output against the closed kit schema.
    Tolerates prose or code fences around the JSON object; anything else
    raises MalformedResponse.
    """
    text = (text or "").strip()
    if not text:
        raise MalformedResponse("empty response from generation model")

    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        start = text.find("{")
        end = text.rfind("}")
        if start == -1 or end <= start:
            raise MalformedResponse("generation model did not return JSON")
        try:
            data = json.loads(text[start:end + 1])
        except json.JSONDecodeError as e:
            raise MalformedResponse(f"generation model returned invalid JSON: {e}") from e

    try:
        return SocialKitResult.model_validate(data)
    except ValidationError as e:
        raise MalformedResponse(f"generation result failed validation: {e.error_count()} error(s)") from e


def generate_social_kit(api_key: str, image_bytes: bytes, mime_type: str, config: GenerationConfig) -> SocialKitResult:
    """
    Sends the image and configuration to the multimodal model with the given key.
    SDK exceptions propagate untouched so the caller can classify them.
    """
    client = get_client(api_key)
    b64 = base64.b64encode(image_bytes).decode("utf-8")

    rsp = client.chat.completions.create(
        model=GENERATION_MODEL,
        response_format={"type": "json_object"},
        messages=[
            {"role": "system", "content": build_system_prompt(config)},
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": USER_PROMPT},
                    {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{b64}"}},
                ],
            },
        ],
    )

    if not rsp.choices:
        raise MalformedResponse("generation model returned no choices")
    return parse_result(rsp.choices[0].message.content or "")
