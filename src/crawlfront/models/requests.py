"""Pydantic models for job submission payloads."""

from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator

from ..core.urls import CrawlStrategy, normalize_url
from ..foundation.errors import ValidationError

RequestModel = TypeVar("RequestModel", bound=BaseModel)


class ScrapeOptions(BaseModel):
    """Options handed to the fetch engine and the extractor for every page."""

    formats: List[str] = Field(default_factory=lambda: ["text"])
    headers: Dict[str, str] = Field(default_factory=dict)
    include_html: bool = False
    include_links: bool = True

    model_config = ConfigDict(extra="forbid")


class ScrapeRequest(BaseModel):
    """Single-page scrape."""

    url: str
    engine: Optional[str] = None
    options: ScrapeOptions = Field(default_factory=ScrapeOptions)

    model_config = ConfigDict(extra="forbid")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v):
        normalized = normalize_url(v)
        if normalized is None:
            raise ValueError("URL must be an absolute http(s) URL")
        return normalized


class SearchRequest(BaseModel):
    """Query against the web search provider, one fetch per results page.

    With ``scrape_options`` every result URL, up to ``limit`` of them, is
    scraped as a child job of the search.
    """

    query: str = Field(min_length=1, max_length=2048)
    pages: int = Field(default=1, ge=1, le=10)
    lang: str = Field(default="en", min_length=2, max_length=16)
    limit: Optional[int] = Field(default=None, ge=1, le=100)
    offset: int = Field(default=0, ge=0)
    options: ScrapeOptions = Field(default_factory=ScrapeOptions)
    scrape_options: Optional[ScrapeOptions] = None

    model_config = ConfigDict(extra="forbid")

    @field_validator("query")
    @classmethod
    def validate_query(cls, v):
        if not v.strip():
            raise ValueError("Query cannot be blank")
        return v.strip()


class CrawlRequest(BaseModel):
    """Multi-page crawl from a seed URL.

    Unset bounds fall back to the ``crawl`` configuration section.
    """

    url: str
    max_depth: Optional[int] = Field(default=None, ge=0)
    limit: Optional[int] = Field(default=None, ge=0)
    include_paths: List[str] = Field(default_factory=list)
    exclude_paths: List[str] = Field(default_factory=list)
    strategy: Optional[CrawlStrategy] = None
    ignore_query_parameters: Optional[bool] = None
    scrape_options: ScrapeOptions = Field(default_factory=ScrapeOptions)

    model_config = ConfigDict(extra="forbid", use_enum_values=True)

    @field_validator("url")
    @classmethod
    def validate_url(cls, v):
        normalized = normalize_url(v)
        if normalized is None:
            raise ValueError("URL must be an absolute http(s) URL")
        return normalized


def parse_request(model: Type[RequestModel], payload: Optional[Dict[str, Any]]) -> RequestModel:
    """Validate a raw payload against a request model.

    Raises:
        ValidationError: If the payload does not validate
    """
    try:
        return model.model_validate(payload or {})
    except PydanticValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        field = ".".join(str(part) for part in first.get("loc", ())) or None
        raise ValidationError(
            f"Invalid {model.__name__}: {first.get('msg', str(e))}",
            field=field,
            details={"errors": e.errors(include_url=False, include_context=False)}
        ) from e
