from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # OpenRouter
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    openrouter_app_title: str = "medresearch"
    llm_timeout_seconds: float = 60.0
    llm_max_retries: int = 2
    default_model: str = "google/gemini-2.5-flash"
    router_model: str = ""  # optional override, falls back to default_model
    planner_model: str = ""
    reflection_model: str = ""
    synthesis_model: str = ""
    analyzer_model: str = ""
    router_temperature: float = 0.1
    planner_temperature: float = 0.3
    reflection_temperature: float = 0.2
    synthesis_temperature: float = 0.4
    analyzer_temperature: float = 0.1
    synthesis_max_tokens: int = 4096

    # Knowledge providers
    tavily_api_key: str = ""
    pubmed_api_key: str = ""
    enabled_providers: str = "pubmed,medrxiv,clinicaltrials,web"
    pubmed_timeout_seconds: float = 3.0
    medrxiv_timeout_seconds: float = 3.0
    clinicaltrials_timeout_seconds: float = 3.0
    web_timeout_seconds: float = 10.0
    pubmed_years_back: int = 5
    provider_weights: str = "pubmed:0.45,medrxiv:0.15,clinicaltrials:0.15,web:0.25"
    web_trusted_domains: str = (
        "nih.gov,cdc.gov,who.int,diabetes.org,mayoclinic.org,"
        "clevelandclinic.org,nice.org.uk,bmj.com,thelancet.com,nejm.org"
    )

    # Tiered flow
    router_confidence_threshold: float = 0.6
    hybrid_source_budget: int = 10
    initial_round_source_budget: int = 25
    gap_fill_round_source_budget: int = 15
    max_rounds: int = 4
    source_ceiling: int = 50
    gap_score_stop_threshold: float | None = None
    request_timeout_seconds: float = 180.0
    analyze_source_mix: bool = True  # per-round provider mix from a model call

    # Ranking / selection
    rank_weight_relevance: float = 0.45
    rank_weight_recency: float = 0.2
    rank_weight_venue_quality: float = 0.2
    rank_weight_citations: float = 0.15
    rank_min_score: float = 0.3
    rank_top_n: int = 25
    rank_extended_top_n: int = 30
    rank_high_quality_score: float = 0.7
    rank_near_duplicate_similarity: float = 0.85
    rank_token_budget: int = 16800

    # Citation verification
    citation_accurate_threshold: float = 0.5
    citation_nuance_threshold: float = 0.25

    # Cost (per 1k tokens, 0 disables)
    cost_per_1k_input_tokens: float = 0.0
    cost_per_1k_output_tokens: float = 0.0

    # App
    cors_origins: str = "http://localhost:3000"
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"
    log_dir: str = ""  # empty disables the file sink
    log_retention_days: int = 7

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",")]

    @property
    def enabled_provider_list(self) -> list[str]:
        return [p.strip().lower() for p in self.enabled_providers.split(",") if p.strip()]

    @property
    def provider_weight_map(self) -> dict[str, float]:
        weights: dict[str, float] = {}
        for pair in self.provider_weights.split(","):
            name, _, value = pair.partition(":")
            if not name.strip():
                continue
            try:
                weights[name.strip().lower()] = float(value)
            except ValueError:
                continue
        return weights

    @property
    def trusted_domain_list(self) -> list[str]:
        return [d.strip() for d in self.web_trusted_domains.split(",") if d.strip()]


settings = Settings()
