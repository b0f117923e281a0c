import os
from enum import Enum
from typing import Any, Dict, List, Optional, Type, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    computed_field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

CLOUD_API_URL = "https://api.firecrawl.dev"


class JobState(str, Enum):
    queued = "queued"
    scraping = "scraping"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.completed, JobState.failed, JobState.cancelled)


class JobKind(str, Enum):
    crawl = "crawl"
    batch_scrape = "batch_scrape"
    extract = "extract"

    @property
    def path(self) -> str:
        return {
            JobKind.crawl: "/v1/crawl",
            JobKind.batch_scrape: "/v1/batch/scrape",
            JobKind.extract: "/v1/extract",
        }[self]

    @property
    def label(self) -> str:
        return self.value.replace("_", " ")


class EventKind(str, Enum):
    document = "document"
    done = "done"
    error = "error"


class RetryPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1)
    backoff_factor: float = 0.5
    multiplier: float = 2.0

    def delay(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt"""
        return self.backoff_factor * (self.multiplier**attempt)


class ClientConfig(BaseModel):
    """Connection settings shared read-only by every request, poll and watch"""

    model_config = ConfigDict(frozen=True)

    api_url: str = CLOUD_API_URL
    api_key: Optional[str] = None
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)

    @field_validator("api_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @model_validator(mode="after")
    def _require_key_for_cloud(self) -> "ClientConfig":
        if "api.firecrawl.dev" in self.api_url and self.api_key is None:
            raise ValueError("No API key provided for cloud service")
        return self

    @classmethod
    def from_env(
        cls, api_key: Optional[str] = None, api_url: Optional[str] = None
    ) -> "ClientConfig":
        return cls(
            api_key=api_key or os.environ.get("FIRECRAWL_API_KEY"),
            api_url=api_url or os.environ.get("FIRECRAWL_API_URL") or CLOUD_API_URL,
        )

    def headers(self, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key is not None:
            headers["Authorization"] = f"Bearer {self.api_key}"
        if idempotency_key:
            headers["x-idempotency-key"] = idempotency_key
        return headers

    def stream_url(self, job_id: str) -> str:
        if self.api_url.startswith("https://"):
            base = "wss://" + self.api_url[len("https://") :]
        elif self.api_url.startswith("http://"):
            base = "ws://" + self.api_url[len("http://") :]
        else:
            base = self.api_url
        return f"{base}/v1/crawl/{job_id}"


class JobHandle(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    kind: JobKind
    config: ClientConfig
    idempotency_key: Optional[str] = None

    @property
    def status_url(self) -> str:
        return f"{self.config.api_url}{self.kind.path}/{self.id}"

    @property
    def errors_url(self) -> str:
        return f"{self.status_url}/errors"


class _WireModel(BaseModel):
    """Accepts camelCase from the wire and snake_case from Python callers"""

    model_config = ConfigDict(
        frozen=True, alias_generator=to_camel, populate_by_name=True
    )


class JobStatus(_WireModel):
    status: JobState
    total: Optional[int] = None
    completed: int = 0
    credits_used: Optional[int] = None
    expires_at: Optional[str] = None
    data: List[Any] = Field(default_factory=list)
    next: Optional[str] = None
    error: Optional[str] = None

    @field_validator("data", "completed", mode="before")
    @classmethod
    def _null_as_empty(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None:
            return [] if info.field_name == "data" else 0
        return value

    @computed_field
    @property
    def success(self) -> bool:
        return self.error is None

    def with_page(self, page: "JobStatus") -> "JobStatus":
        """Metadata from the newer page, documents concatenated in arrival order"""
        return page.model_copy(update={"data": [*self.data, *page.data]})


class ExtractStatus(_WireModel):
    status: JobState
    success: bool = False
    data: Any = None
    error: Optional[str] = None
    expires_at: Optional[str] = None


class StreamFrame(BaseModel):
    type: str
    data: Any = None


class HttpResponse(BaseModel):
    status: int
    text: str
    url: str = ""

    @property
    def ok(self) -> bool:
        return self.status == 200


SchemaLike = Union[Dict[str, Any], Type[BaseModel]]


def _schema_dict(schema: Optional[SchemaLike]) -> Optional[Dict[str, Any]]:
    if isinstance(schema, type) and issubclass(schema, BaseModel):
        return schema.model_json_schema()
    return schema


class RequestParams(BaseModel):
    """Base for job-creation options.

    Named fields are serialised in camelCase and dropped when left at None.
    Options the server understands but this client does not model yet may be
    passed as extra keyword arguments and are forwarded untouched.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    def to_body(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class JsonOptions(RequestParams):
    prompt: Optional[str] = None
    schema_: Optional[Any] = Field(
        default=None,
        alias="schema",
        validation_alias=AliasChoices("schema", "schema_"),
    )
    system_prompt: Optional[str] = None

    @model_validator(mode="after")
    def _convert_schema(self) -> "JsonOptions":
        self.schema_ = _schema_dict(self.schema_)
        return self


class ScrapeParams(RequestParams):
    formats: Optional[List[str]] = None  # server default: ["markdown"]
    only_main_content: Optional[bool] = None
    include_tags: Optional[List[str]] = None
    exclude_tags: Optional[List[str]] = None
    wait_for: Optional[int] = None  # milliseconds
    timeout: Optional[int] = None  # milliseconds
    json_options: Optional[JsonOptions] = None


class CrawlParams(RequestParams):
    limit: Optional[int] = None
    max_depth: Optional[int] = None
    include_paths: Optional[List[str]] = None
    exclude_paths: Optional[List[str]] = None
    allow_external_links: Optional[bool] = None
    ignore_sitemap: Optional[bool] = None
    scrape_options: Optional[ScrapeParams] = None
    webhook: Optional[str] = None


class BatchScrapeParams(ScrapeParams):
    ignore_invalid_urls: Optional[bool] = None
    webhook: Optional[str] = None


class MapParams(RequestParams):
    search: Optional[str] = None
    ignore_sitemap: Optional[bool] = None
    include_subdomains: Optional[bool] = None
    limit: Optional[int] = None


class SearchParams(RequestParams):
    query: Optional[str] = None  # filled in from search(query, ...)
    limit: int = 5
    tbs: Optional[str] = None
    filter: Optional[str] = None
    lang: str = "en"
    country: str = "us"
    location: Optional[str] = None
    origin: str = "api"
    timeout: int = 60000  # milliseconds
    scrape_options: Optional[ScrapeParams] = None


class ExtractParams(RequestParams):
    urls: Optional[List[str]] = None
    prompt: Optional[str] = None
    schema_: Optional[Any] = Field(
        default=None,
        alias="schema",
        validation_alias=AliasChoices("schema", "schema_"),
    )
    system_prompt: Optional[str] = None
    allow_external_links: bool = False
    enable_web_search: bool = False
    origin: str = "api-sdk"

    @model_validator(mode="after")
    def _require_prompt_or_schema(self) -> "ExtractParams":
        if self.prompt is None and self.schema_ is None:
            raise ValueError("Either prompt or schema is required")
        self.schema_ = _schema_dict(self.schema_)
        return self
