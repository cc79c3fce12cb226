from tutor_rag_core.config import Settings, default_rate_limits

REQUIRED = {
    "QDRANT_URL": "http://localhost:6333",
    "EMBEDDING_URL": "http://localhost:8080",
    "LLM_URL": "http://localhost:8081",
    "S3_ENDPOINT": "http://localhost:9000",
    "S3_BUCKET": "tutor-uploads",
}


def test_settings_parses_required_fields() -> None:
    settings = Settings.model_validate(REQUIRED)
    assert settings.qdrant_url == "http://localhost:6333"
    assert settings.embed_batch_size == 10
    assert settings.upload_limits == {"student": 3, "teacher": 5, "institution": 20, "admin": None}
    assert settings.cache_ttls == {"answer": 604800}


def test_settings_accepts_rate_limit_overrides() -> None:
    settings = Settings.model_validate(
        {**REQUIRED, "RATE_LIMITS": {"ai_query": {"student": {"limit": 3, "window": 60}}}}
    )
    assert settings.rate_limits["ai_query"]["student"].limit == 3


def test_default_rate_limits_cover_every_role() -> None:
    table = default_rate_limits()
    assert table["ai_query"]["student"].limit == 100
    assert table["ai_query"]["student"].window == 900
    assert table["study_plan"]["admin"].window == 3600
    for rules in table.values():
        assert set(rules) == {"student", "teacher", "institution", "admin"}
