"""Basic checks you can run locally to confirm wiring."""
from .auth import hash_password, verify_password
from .gemini_client import build_system_prompt
from .schemas import GenerationConfig
from .services.admission import Decision, decide
from .services.ledger import LedgerSnapshot


def main():
    h = hash_password("test123")
    assert verify_password("test123", h)
    assert not verify_password("wrong", h)
    print("OK: password hashing works")

    assert decide(LedgerSnapshot(used=2, limit=3)) is Decision.USE_POOL
    assert decide(LedgerSnapshot(used=3, limit=3)) is Decision.DENY
    assert decide(LedgerSnapshot(used=3, limit=3, own_credential="key")) is Decision.USE_OWN
    print("OK: admission policy works")

    prompt = build_system_prompt(GenerationConfig(tone="funny", platforms=["TikTok"], language="French"))
    assert "Tone: funny" in prompt and "French" in prompt
    print("OK: prompt builds")


if __name__ == "__main__":
    main()
