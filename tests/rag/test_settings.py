import pytest

from rag_engine.settings import (
    RagConfigErrorCode,
    RagConfigurationError,
    RagSettings,
    get_settings,
    load_settings,
    reset_settings_cache,
)

_RAG_ENV_VARS = (
    "RAG_DATABASE_URL",
    "DATABASE_URL",
    "RAG_ENV_FILE",
    "RAG_VECTOR_SCHEMA",
    "RAG_DEFAULT_EMBEDDING_DIM",
    "RAG_SEMANTIC_WEIGHT",
    "RAG_TEXTUAL_WEIGHT",
    "RAG_DISTANCE_OPERATOR",
    "RAG_SEARCH_TOP_K",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in _RAG_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults_without_environment():
    settings = load_settings()

    assert settings.database_url is None
    assert settings.schema == "rag"
    assert settings.default_embedding_dimension == 1536
    assert settings.config_cache_ttl_seconds == 1800.0
    assert (settings.semantic_weight, settings.textual_weight) == (0.6, 0.4)
    assert settings.distance_operator == "<=>"


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql://fallback/db")
    monkeypatch.setenv("RAG_DATABASE_URL", "postgresql://rag/db")
    monkeypatch.setenv("RAG_VECTOR_SCHEMA", " embeddings ")
    monkeypatch.setenv("RAG_DEFAULT_EMBEDDING_DIM", "768")
    monkeypatch.setenv("RAG_DISTANCE_OPERATOR", "L2")

    settings = load_settings()

    assert settings.database_url == "postgresql://rag/db"
    assert settings.schema == "embeddings"
    assert settings.default_embedding_dimension == 768
    assert settings.distance_operator == "<->"


def test_database_url_falls_back_to_generic_variable(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql://fallback/db")

    assert load_settings().database_url == "postgresql://fallback/db"


@pytest.mark.parametrize(
    "overrides,code",
    [
        ({"default_embedding_dimension": 0}, RagConfigErrorCode.DIMENSION_INVALID),
        ({"semantic_weight": -1.0}, RagConfigErrorCode.WEIGHT_INVALID),
        ({"search_top_k": 0}, RagConfigErrorCode.TOP_K_INVALID),
        ({"pool_minconn": 3, "pool_maxconn": 2}, RagConfigErrorCode.POOL_INVALID),
        ({"distance_metric": "hamming"}, RagConfigErrorCode.DISTANCE_OPERATOR_UNKNOWN),
        ({"schema": ""}, RagConfigErrorCode.SCHEMA_REQUIRED),
    ],
)
def test_invalid_settings_are_rejected(overrides, code):
    with pytest.raises(RagConfigurationError) as excinfo:
        RagSettings(**overrides)

    assert str(excinfo.value).startswith(code)


def test_get_settings_is_cached_until_reset(monkeypatch):
    first = get_settings()
    monkeypatch.setenv("RAG_SEARCH_TOP_K", "25")

    assert get_settings() is first

    reset_settings_cache()
    assert get_settings().search_top_k == 25
