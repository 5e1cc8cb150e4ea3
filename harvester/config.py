import re
from dataclasses import dataclass
from enum import Enum

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_db: str = "winery_harvest"
    log_level: str = "INFO"

    # OpenAI-compatible chat completions endpoint
    llm_base_url: str = "https://api.openai.com/v1"
    llm_model: str = "gpt-4o-mini"
    llm_api_key: str = ""
    llm_temperature: float = 0.0
    llm_max_tokens: int = 4096
    llm_input_cost_per_m: float = 0.15
    llm_output_cost_per_m: float = 0.6

    # Politeness and concurrency
    max_concurrent_browsers: int = 3
    min_delay_between_requests: float = 2.0
    max_delay_between_requests: float = 5.0
    max_retries: int = 3
    initial_retry_delay: float = 1.0

    # Browser
    page_timeout_ms: int = 30000
    settle_ms: int = 3000
    expand_wait_ms: int = 2000
    probe_timeout: float = 10.0

    # Extraction input
    max_text_chars: int = 15000
    min_extraction_chars: int = 50

    # Validation bounds
    offering_price_min: float = 5
    offering_price_max: float = 5000
    experience_price_max: float = 1000
    duration_min: int = 10
    duration_max: int = 480
    vintage_min: int = 1970
    lat_min: float = 38.1
    lat_max: float = 38.8
    lng_min: float = -123.1
    lng_max: float = -122.1

    # Run
    batch_size: int = 25
    targets_path: str = "data/winery-targets.json"
    url_map_path: str = "data/winery-urls.json"
    max_photos: int = 3

    model_config = {"env_file": ".env"}


settings = Settings()


class Category(str, Enum):
    """Content categories discovered per venue website."""

    OFFERINGS = "offerings"
    EXPERIENCES = "experiences"
    PROFILE = "profile"


@dataclass(frozen=True)
class CategoryPatterns:
    """Link-matching rules for one category of sub-page."""

    text_patterns: tuple[re.Pattern, ...]
    path_patterns: tuple[re.Pattern, ...]
    probe_paths: tuple[str, ...]

    def matches(self, text: str, path: str) -> bool:
        return any(p.search(text) for p in self.text_patterns) or any(
            p.search(path) for p in self.path_patterns
        )


def _compile(*patterns: str) -> tuple[re.Pattern, ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


CATEGORY_PATTERNS: dict[Category, CategoryPatterns] = {
    Category.OFFERINGS: CategoryPatterns(
        text_patterns=_compile(
            r"\bwines?\b",
            r"\bshop\b",
            r"\bour wines\b",
            r"\bcollection\b",
            r"\bcurrent releases?\b",
            r"\bportfolio\b",
        ),
        path_patterns=_compile(
            r"/wines?\b",
            r"/shop\b",
            r"/our-wines?\b",
            r"/current-releases?\b",
            r"/collection\b",
            r"/portfolio\b",
        ),
        probe_paths=("/wines", "/shop", "/our-wines", "/current-releases", "/collection"),
    ),
    Category.EXPERIENCES: CategoryPatterns(
        text_patterns=_compile(
            r"\bvisit\b",
            r"\btasting",
            r"\bexperiences?\b",
            r"\breserv",
            r"\bhospitality\b",
            r"\btours?\b",
        ),
        path_patterns=_compile(
            r"/visit",
            r"/tasting",
            r"/experience",
            r"/reserv",
            r"/hospitality",
            r"/tour",
            r"/book",
        ),
        probe_paths=("/visit", "/tastings", "/experiences", "/reservations", "/hospitality"),
    ),
    Category.PROFILE: CategoryPatterns(
        text_patterns=_compile(
            r"\babout\b",
            r"\bstory\b",
            r"\bour story\b",
            r"\bestate\b",
            r"\bhistory\b",
            r"\bwinemaker\b",
        ),
        path_patterns=_compile(
            r"/about",
            r"/story",
            r"/our-story",
            r"/estate",
            r"/history",
            r"/winemaker",
        ),
        probe_paths=("/about", "/story", "/our-story", "/estate", "/about-us"),
    ),
}
