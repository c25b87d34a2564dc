from __future__ import annotations

import json
import logging
from pathlib import Path
from time import perf_counter
from typing import Any, Callable, TypeVar

import typer

from clip_recommender.config import ENV_PREFIX, Settings, load_settings
from clip_recommender.errors import RecommendationError
from clip_recommender.logging_config import configure_logging
from clip_recommender.models import GenerationResult, MediaClip, TimelineClip
from clip_recommender.persistence.fixtures import load_fixture_file
from clip_recommender.persistence.record_store import RecordStore, create_store_engine
from clip_recommender.persistence.schema import create_schema
from clip_recommender.propose.exporter import export_final_outputs, recommendation_to_dict
from clip_recommender.service import RecommendationService

app = typer.Typer(help="Clip recommendation engine.")
config_app = typer.Typer(help="Configuration commands.")
db_app = typer.Typer(help="Record-store commands.")
recommend_app = typer.Typer(help="Recommendation generation, review and feedback commands.")

app.add_typer(config_app, name="config")
app.add_typer(db_app, name="db")
app.add_typer(recommend_app, name="recommend")

logger = logging.getLogger(__name__)

T = TypeVar("T")

CONFIG_OPTION = typer.Option(
    Path("configs/default.yaml"),
    "--config",
    "-c",
    envvar=f"{ENV_PREFIX}CONFIG",
    help="Path to YAML configuration file.",
)


def _run_with_progress(step_index: int, total_steps: int, label: str, work: Callable[[], T]) -> T:
    typer.echo(f"[{step_index}/{total_steps}] {label}...", err=True)
    started_at = perf_counter()
    try:
        result = work()
    except Exception:
        elapsed = perf_counter() - started_at
        typer.echo(f"[{step_index}/{total_steps}] {label} failed after {elapsed:.1f}s", err=True)
        raise
    elapsed = perf_counter() - started_at
    typer.echo(f"[{step_index}/{total_steps}] {label} done in {elapsed:.1f}s", err=True)
    return result


def _bootstrap(config_path: Path) -> Settings:
    settings = load_settings(config_path)
    configure_logging(settings.logging)
    logger.debug("Loaded runtime settings from %s", config_path)
    return settings


def _service(settings: Settings) -> RecommendationService:
    return RecommendationService.from_settings(settings)


def _fail(exc: RecommendationError) -> typer.Exit:
    logger.error("Command failed: %s", exc)
    typer.echo(f"Error: {exc}", err=True)
    return typer.Exit(code=1 if exc.client_error else 2)


def _parse_weights(raw: list[str] | None) -> dict[str, float]:
    weights: dict[str, float] = {}
    for item in raw or []:
        name, sep, value = item.partition("=")
        if not sep:
            raise typer.BadParameter(f"Expected NAME=VALUE, got '{item}'.", param_hint="--weight")
        try:
            weights[name.strip()] = float(value)
        except ValueError as exc:
            raise typer.BadParameter(f"Weight '{item}' is not a number.", param_hint="--weight") from exc
    return weights


def _filter_payload(
    label_types: list[str] | None,
    min_confidence: float | None,
    min_duration: float | None,
    max_duration: float | None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    if label_types:
        payload["label_types"] = label_types
    if min_confidence is not None:
        payload["min_confidence"] = min_confidence
    if min_duration is not None or max_duration is not None:
        payload["duration_range"] = {"min": min_duration or 0.0, "max": max_duration}
    return payload


def _generation_payload(result: GenerationResult) -> dict[str, Any]:
    return {
        "generated": result.generated,
        "pruned": result.pruned,
        "query_hash": result.query_hash,
        "recommendations": [recommendation_to_dict(item) for item in result.recommendations],
    }


def _clip_payload(clip: MediaClip | TimelineClip | None) -> dict[str, Any] | None:
    if clip is None:
        return None
    payload = {
        "id": clip.id,
        "media_id": clip.media_id,
        "start_seconds": clip.start_seconds,
        "end_seconds": clip.end_seconds,
        "meta": clip.meta,
    }
    if isinstance(clip, TimelineClip):
        payload.update({"timeline_id": clip.timeline_id, "media_clip_id": clip.media_clip_id, "order": clip.order})
    else:
        payload["clip_type"] = clip.clip_type
    return payload


@config_app.command("show")
def show_config(config_path: Path = CONFIG_OPTION) -> None:
    """Print resolved runtime configuration."""

    settings = _bootstrap(config_path)
    typer.echo(json.dumps(settings.model_dump(mode="json"), indent=2))


@db_app.command("init")
def init_db(config_path: Path = CONFIG_OPTION) -> None:
    """Create record-store and recommendation tables."""

    settings = _bootstrap(config_path)
    try:
        create_schema(create_store_engine(settings.store))
    except RecommendationError as exc:
        raise _fail(exc) from exc
    typer.echo(json.dumps({"status": "ok", "database_url": settings.store.database_url}, indent=2))


@db_app.command("load")
def load_db(
    fixture_path: Path = typer.Argument(..., help="Path to a workspace snapshot JSON file."),
    config_path: Path = CONFIG_OPTION,
) -> None:
    """Load media, clips, timelines and label rows from a JSON snapshot."""

    settings = _bootstrap(config_path)
    try:
        engine = create_store_engine(settings.store)
        _run_with_progress(1, 2, "Ensure schema", lambda: create_schema(engine))
        store = RecordStore(engine)
        counts = _run_with_progress(2, 2, "Load fixture", lambda: load_fixture_file(store, fixture_path))
    except RecommendationError as exc:
        raise _fail(exc) from exc
    except (OSError, ValueError, KeyError) as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    typer.echo(json.dumps({"status": "ok", "loaded": counts}, indent=2))


@recommend_app.command("media")
def recommend_media(
    workspace_id: str,
    media_id: str,
    strategy: list[str] | None = typer.Option(None, "--strategy", "-s", help="Strategy to run (repeatable)."),
    weight: list[str] | None = typer.Option(None, "--weight", "-w", help="Strategy weight as NAME=VALUE (repeatable)."),
    label_type: list[str] | None = typer.Option(None, "--label-type", help="Allowed label type (repeatable)."),
    min_confidence: float | None = typer.Option(None, help="Minimum detection confidence."),
    min_duration: float | None = typer.Option(None, help="Minimum candidate duration in seconds."),
    max_duration: float | None = typer.Option(None, help="Maximum candidate duration in seconds."),
    max_results: int | None = typer.Option(None, help="Maximum recommendations to keep."),
    config_path: Path = CONFIG_OPTION,
) -> None:
    """Generate and persist recommendations for one media item."""

    settings = _bootstrap(config_path)
    weights = _parse_weights(weight)
    try:
        result = _run_with_progress(
            1,
            1,
            "Generate media recommendations",
            lambda: _service(settings).generate_media_recommendations(
                workspace_id,
                media_id,
                filter_params=_filter_payload(label_type, min_confidence, min_duration, max_duration),
                max_results=max_results,
                strategies=strategy,
                weights=weights,
            ),
        )
    except RecommendationError as exc:
        raise _fail(exc) from exc
    typer.echo(json.dumps(_generation_payload(result), indent=2))


@recommend_app.command("timeline")
def recommend_timeline(
    workspace_id: str,
    timeline_id: str,
    seed: str | None = typer.Option(None, "--seed", help="Timeline clip to continue from."),
    mode: str = typer.Option("append", "--mode", help="Target mode: append or replace."),
    strategy: list[str] | None = typer.Option(None, "--strategy", "-s", help="Strategy to run (repeatable)."),
    weight: list[str] | None = typer.Option(None, "--weight", "-w", help="Strategy weight as NAME=VALUE (repeatable)."),
    time_window: float | None = typer.Option(None, help="Temporal adjacency window in seconds."),
    min_duration: float | None = typer.Option(None, help="Minimum clip duration in seconds."),
    max_duration: float | None = typer.Option(None, help="Maximum clip duration in seconds."),
    max_results: int | None = typer.Option(None, help="Maximum recommendations to keep."),
    config_path: Path = CONFIG_OPTION,
) -> None:
    """Generate and persist continuation recommendations for a timeline."""

    settings = _bootstrap(config_path)
    weights = _parse_weights(weight)
    search = _filter_payload(None, None, min_duration, max_duration)
    if time_window is not None:
        search["time_window"] = time_window
    try:
        result = _run_with_progress(
            1,
            1,
            "Generate timeline recommendations",
            lambda: _service(settings).generate_timeline_recommendations(
                workspace_id,
                timeline_id,
                seed_clip_id=seed,
                target_mode=mode,
                strategies=strategy,
                weights=weights,
                search_params=search,
                max_results=max_results,
            ),
        )
    except RecommendationError as exc:
        raise _fail(exc) from exc
    typer.echo(json.dumps(_generation_payload(result), indent=2))


@recommend_app.command("replace")
def recommend_replace(
    workspace_id: str,
    timeline_id: str,
    timeline_clip_id: str,
    strategy: list[str] | None = typer.Option(None, "--strategy", "-s", help="Strategy to run (repeatable)."),
    max_results: int | None = typer.Option(None, help="Maximum recommendations to keep."),
    config_path: Path = CONFIG_OPTION,
) -> None:
    """Recommend replacements for a clip already on the timeline."""

    settings = _bootstrap(config_path)
    try:
        result = _run_with_progress(
            1,
            1,
            "Generate replacement recommendations",
            lambda: _service(settings).replacement_recommendations(
                workspace_id,
                timeline_id,
                timeline_clip_id,
                strategies=strategy,
                max_results=max_results,
            ),
        )
    except RecommendationError as exc:
        raise _fail(exc) from exc
    typer.echo(json.dumps(_generation_payload(result), indent=2))


@recommend_app.command("list")
def list_recommendations(
    target_id: str,
    exclude_accepted: bool = typer.Option(False, help="Hide accepted recommendations."),
    exclude_dismissed: bool = typer.Option(False, help="Hide dismissed recommendations."),
    strategy: str | None = typer.Option(None, help="Only this strategy."),
    mode: str | None = typer.Option(None, "--mode", help="Only this target mode (timeline recommendations)."),
    min_score: float | None = typer.Option(None, help="Minimum score."),
    page: int = typer.Option(1, help="1-based page number."),
    per_page: int = typer.Option(50, help="Items per page."),
    config_path: Path = CONFIG_OPTION,
) -> None:
    """List persisted recommendations for a media item or timeline."""

    settings = _bootstrap(config_path)
    options: dict[str, Any] = {"exclude_accepted": exclude_accepted, "exclude_dismissed": exclude_dismissed}
    if strategy is not None:
        options["strategy"] = strategy
    if mode is not None:
        options["target_mode"] = mode
    if min_score is not None:
        options["min_score"] = min_score
    try:
        result = _service(settings).list_recommendations(target_id, options, page=page, per_page=per_page)
    except RecommendationError as exc:
        raise _fail(exc) from exc
    typer.echo(
        json.dumps(
            {
                "page": result.page,
                "per_page": result.per_page,
                "total_items": result.total_items,
                "total_pages": result.total_pages,
                "items": [recommendation_to_dict(item) for item in result.items],
            },
            indent=2,
        )
    )


@recommend_app.command("accept")
def accept_recommendation(
    recommendation_id: str,
    order: int | None = typer.Option(None, help="Timeline position for the new clip (default: append)."),
    config_path: Path = CONFIG_OPTION,
) -> None:
    """Accept a recommendation and materialise its clip."""

    settings = _bootstrap(config_path)
    options = {"order": order} if order is not None else None
    try:
        result = _service(settings).accept_recommendation(recommendation_id, options)
    except RecommendationError as exc:
        raise _fail(exc) from exc
    typer.echo(
        json.dumps(
            {
                "recommendation": recommendation_to_dict(result.recommendation),
                "clip": _clip_payload(result.clip),
            },
            indent=2,
        )
    )


@recommend_app.command("dismiss")
def dismiss_recommendation(recommendation_id: str, config_path: Path = CONFIG_OPTION) -> None:
    """Dismiss a recommendation."""

    settings = _bootstrap(config_path)
    try:
        recommendation = _service(settings).dismiss_recommendation(recommendation_id)
    except RecommendationError as exc:
        raise _fail(exc) from exc
    typer.echo(json.dumps(recommendation_to_dict(recommendation), indent=2))


@recommend_app.command("stats")
def recommendation_stats(
    workspace_id: str,
    target_id: str | None = typer.Option(None, "--target", help="Limit to one media item or timeline."),
    strategy: str | None = typer.Option(None, help="Limit to one strategy."),
    config_path: Path = CONFIG_OPTION,
) -> None:
    """Print acceptance and dismissal rates per strategy."""

    settings = _bootstrap(config_path)
    try:
        stats = _service(settings).recommendation_stats(workspace_id, target_id=target_id, strategy=strategy)
    except RecommendationError as exc:
        raise _fail(exc) from exc
    typer.echo(json.dumps(stats, indent=2))


@recommend_app.command("export")
def export_recommendations(
    target_id: str,
    output_dir: Path = typer.Option(Path("data/outputs"), "--output-dir", "-o", help="Directory for JSON/CSV/review outputs."),
    basename: str | None = typer.Option(None, help="Base filename for exported artifacts (default: target id)."),
    include_settled: bool = typer.Option(True, help="Include accepted and dismissed recommendations."),
    config_path: Path = CONFIG_OPTION,
) -> None:
    """Export recommendations of a target to JSON/CSV plus a review manifest."""

    settings = _bootstrap(config_path)
    options = {"exclude_accepted": not include_settled, "exclude_dismissed": not include_settled}
    try:
        service = _service(settings)
        items = []
        page = 1
        while True:
            result = service.list_recommendations(target_id, options, page=page, per_page=500)
            items.extend(result.items)
            if page >= result.total_pages:
                break
            page += 1
    except RecommendationError as exc:
        raise _fail(exc) from exc

    exported = export_final_outputs(items, output_dir, basename=basename or f"{target_id}_recommendations")
    typer.echo(json.dumps({"count": len(items), **{key: str(path) for key, path in exported.items()}}, indent=2))


if __name__ == "__main__":
    app()
