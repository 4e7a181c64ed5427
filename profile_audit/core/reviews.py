from __future__ import annotations

from typing import Any, Iterable

from profile_audit.core.schema import Review, ReviewAnalysis


def convert_review(item: dict[str, Any]) -> Review:
    rating = item.get("rating") or {}
    return Review(
        author=str(item.get("profile_name") or ""),
        rating=float(rating.get("value") or 0) if isinstance(rating, dict) else 0.0,
        text=str(item.get("review_text") or ""),
        date=str(item.get("timestamp") or item.get("time_ago") or ""),
        owner_response=item.get("owner_answer") or None,
        response_date=item.get("owner_answer_timestamp") or None,
    )


def analyze_reviews(reviews: Iterable[Review]) -> ReviewAnalysis:
    reviews = list(reviews)
    distribution = {star: 0 for star in range(1, 6)}
    if not reviews:
        return ReviewAnalysis(rating_distribution=distribution)

    total_rating = 0.0
    responded = 0
    for review in reviews:
        star = round(review.rating)
        if 1 <= star <= 5:
            distribution[star] += 1
        total_rating += review.rating
        if review.owner_response:
            responded += 1

    return ReviewAnalysis(
        response_rate=round(responded / len(reviews) * 100),
        avg_rating=round(total_rating / len(reviews), 1),
        rating_distribution=distribution,
    )
