from __future__ import annotations

import csv
import json
from datetime import datetime
from pathlib import Path
from typing import Any

from clip_recommender.models import Recommendation


def recommendation_to_dict(recommendation: Recommendation) -> dict[str, Any]:
    """JSON-safe view of a recommendation, shared by the CLI and file exports."""

    return {
        "id": recommendation.id,
        "kind": recommendation.kind.value,
        "workspace_id": recommendation.workspace_id,
        "target_id": recommendation.target_id,
        "strategy": recommendation.strategy.value,
        "label_type": recommendation.label_type.value,
        "start_seconds": recommendation.start_seconds,
        "end_seconds": recommendation.end_seconds,
        "clip_id": recommendation.clip_id,
        "score": recommendation.score,
        "rank": recommendation.rank,
        "reason": recommendation.reason,
        "reason_data": recommendation.reason_data,
        "query_hash": recommendation.query_hash,
        "version": recommendation.version,
        "target_mode": recommendation.target_mode.value if recommendation.target_mode else None,
        "seed_clip_id": recommendation.seed_clip_id,
        "status": recommendation.status,
        "accepted_at": _iso(recommendation.accepted_at),
        "dismissed_at": _iso(recommendation.dismissed_at),
        "accepted_clip_id": recommendation.accepted_clip_id,
        "processor": recommendation.processor,
    }


def export_recommendations(recommendations: list[Recommendation], output_path: str | Path) -> Path:
    """Export recommendations to JSON (default) or CSV, based on file extension."""

    path = Path(output_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    if path.suffix.lower() == ".csv":
        _write_csv(recommendations, path)
    else:
        _write_json(recommendations, path)

    return path


def export_final_outputs(
    recommendations: list[Recommendation],
    output_dir: str | Path,
    *,
    basename: str = "recommendations",
) -> dict[str, Path]:
    """Export JSON/CSV files and a review manifest for quick triage."""

    resolved_output_dir = Path(output_dir)
    resolved_output_dir.mkdir(parents=True, exist_ok=True)

    json_path = resolved_output_dir / f"{basename}.json"
    csv_path = resolved_output_dir / f"{basename}.csv"
    review_path = resolved_output_dir / f"{basename}_review.json"

    export_recommendations(recommendations, json_path)
    export_recommendations(recommendations, csv_path)

    review_manifest = generate_review_manifest(recommendations)
    review_path.write_text(json.dumps(review_manifest, indent=2, ensure_ascii=False), encoding="utf-8")

    return {
        "json": json_path,
        "csv": csv_path,
        "review": review_path,
    }


def generate_review_manifest(recommendations: list[Recommendation]) -> list[dict[str, Any]]:
    """Build a lightweight review manifest with confidence/reason summaries."""

    manifest: list[dict[str, Any]] = []
    for idx, recommendation in enumerate(sorted(recommendations, key=lambda item: item.rank), start=1):
        manifest.append(
            {
                "index": idx,
                "id": recommendation.id,
                "target_id": recommendation.target_id,
                "clip_id": recommendation.clip_id,
                "start_seconds": recommendation.start_seconds,
                "end_seconds": recommendation.end_seconds,
                "duration_seconds": round(recommendation.end_seconds - recommendation.start_seconds, 3),
                "score": recommendation.score,
                "confidence": _confidence_label(recommendation.score),
                "status": recommendation.status,
                "reason_summary": _reason_summary(recommendation),
            }
        )

    return manifest


def _write_json(recommendations: list[Recommendation], path: Path) -> None:
    payload = [recommendation_to_dict(item) for item in recommendations]
    path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")


def _write_csv(recommendations: list[Recommendation], path: Path) -> None:
    fields = [
        "id",
        "kind",
        "target_id",
        "rank",
        "strategy",
        "label_type",
        "clip_id",
        "start_seconds",
        "end_seconds",
        "duration_seconds",
        "score",
        "confidence",
        "status",
        "reason",
    ]

    with path.open("w", newline="", encoding="utf-8") as handle:
        writer = csv.DictWriter(handle, fieldnames=fields)
        writer.writeheader()
        for recommendation in recommendations:
            writer.writerow(
                {
                    "id": recommendation.id,
                    "kind": recommendation.kind.value,
                    "target_id": recommendation.target_id,
                    "rank": recommendation.rank,
                    "strategy": recommendation.strategy.value,
                    "label_type": recommendation.label_type.value,
                    "clip_id": recommendation.clip_id or "",
                    "start_seconds": f"{recommendation.start_seconds:.3f}",
                    "end_seconds": f"{recommendation.end_seconds:.3f}",
                    "duration_seconds": f"{recommendation.end_seconds - recommendation.start_seconds:.3f}",
                    "score": f"{recommendation.score:.4f}",
                    "confidence": _confidence_label(recommendation.score),
                    "status": recommendation.status,
                    "reason": recommendation.reason,
                }
            )


def _confidence_label(score: float) -> str:
    if score >= 0.8:
        return "high"
    if score >= 0.6:
        return "medium"
    return "low"


def _reason_summary(recommendation: Recommendation) -> str:
    merged = recommendation.reason_data.get("mergedFrom") or []
    if not merged:
        return recommendation.reason
    others = ", ".join(str(item.get("strategy")) for item in merged)
    return f"{recommendation.reason} (also: {others})"


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
