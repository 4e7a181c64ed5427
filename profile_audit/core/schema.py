from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, field_validator

RADIUS_MENU_MILES: tuple[float, ...] = (0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0)
GRID_SIZES: tuple[int, ...] = (3, 5, 7)


class Coordinate(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class BusinessProfile(BaseModel):
    place_id: str
    name: str
    category: str = ""
    address: str = ""
    rating: float = 0.0
    review_count: int = 0
    photos: int = 0
    location: Coordinate | None = None


class Review(BaseModel):
    author: str = ""
    rating: float = 0.0
    text: str = ""
    date: str = ""
    owner_response: str | None = None
    response_date: str | None = None


class ReviewAnalysis(BaseModel):
    response_rate: int = 0
    avg_rating: float = 0.0
    rating_distribution: dict[int, int] = Field(default_factory=lambda: {star: 0 for star in range(1, 6)})


class ReviewAudit(BaseModel):
    reviews: list[Review] = Field(default_factory=list)
    analysis: ReviewAnalysis = Field(default_factory=ReviewAnalysis)
    total_reviews: int | None = None
    place_id: str | None = None


class Competitor(BaseModel):
    rank: int
    name: str = ""
    place_id: str = ""
    rating: float = 0.0


class RankCheckResult(BaseModel):
    lat: float
    lng: float
    rank: int | None = None
    competitors: list[Competitor] = Field(default_factory=list)


class GridSummary(BaseModel):
    average_rank: float | None = None
    best_rank: int | None = None
    worst_rank: int | None = None
    ranked_points: int = 0
    total_points: int = 0


class PostsSummary(BaseModel):
    count: int = 0
    last_post_date: str | None = None
    last_post_text: str | None = None


class QuestionSummary(BaseModel):
    question: str
    has_answer: bool = False
    date: str | None = None


class QnASummary(BaseModel):
    total_count: int = 0
    answered_count: int = 0
    unanswered_count: int = 0
    recent_questions: list[QuestionSummary] = Field(default_factory=list)


class ScrapedData(BaseModel):
    posts: PostsSummary = Field(default_factory=PostsSummary)
    qna: QnASummary = Field(default_factory=QnASummary)
    has_menu: bool = False
    scraped_at: str


class ScrapeError(BaseModel):
    error: str
    error_type: Literal["TIMEOUT", "NETWORK", "BLOCKED", "BROWSER", "NOT_FOUND", "UNKNOWN"]
    original_error: str
    params: dict[str, str] = Field(default_factory=dict)
    timestamp: str


class AuditWorkingState(BaseModel):
    """Live view of one subject; every job family owns a disjoint slice."""

    business: BusinessProfile | None = None
    basic_score: int = 0
    review_data: ReviewAudit | None = None
    review_fetched_at: str | None = None
    review_depth: int = 50
    rank_results: list[RankCheckResult] = Field(default_factory=list)
    rank_keyword: str = ""
    scraped_data: ScrapedData | None = None


class CachedAudit(AuditWorkingState):
    last_audit_at: str | None = None


class GridRequest(BaseModel):
    keyword: str = Field(min_length=1)
    center_lat: float = Field(ge=-90, le=90)
    center_lng: float = Field(ge=-180, le=180)
    target_place_id: str = Field(min_length=1)
    business_name: str | None = None
    grid_size: int = 3
    radius_miles: float = 0.5

    @field_validator("grid_size")
    @classmethod
    def _check_grid_size(cls, value: int) -> int:
        if value not in GRID_SIZES:
            raise ValueError(f"grid_size must be one of {GRID_SIZES}")
        return value

    @field_validator("radius_miles")
    @classmethod
    def _check_radius(cls, value: float) -> float:
        if not any(abs(value - option) < 1e-9 for option in RADIUS_MENU_MILES):
            raise ValueError(f"radius_miles must be one of {RADIUS_MENU_MILES}")
        return value
