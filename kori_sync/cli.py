"""
Command-line interface tools for the Kori sync service.
"""

import asyncio
import json
from collections.abc import Coroutine
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import httpx
import typer
from httpx_sse import ServerSentEvent, aconnect_sse

from .config import get_settings
from .errors import IntegrationError
from .integrations.huggingface import HuggingFaceMoodDetector
from .models import ANIMATION_STATES

DEFAULT_BASE_URL = "http://localhost:4000"

ENTITY_ROUTES = {
    "cat": "/api/cat/state",
    "prefs": "/api/prefs/state",
    "stats": "/api/stats/state",
}

app = typer.Typer(help="Kori sync CLI tools")


# MARK: - Commands


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Interface to bind"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port to bind"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes"),
) -> None:
    """Run the sync server."""
    import uvicorn

    from .logging import setup_logging

    settings = get_settings()
    setup_logging(settings.log_level, settings.log_format)
    uvicorn.run(
        "kori_sync.server:build_app",
        factory=True,
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


@app.command()
def get(
    entity: str = typer.Argument("all", help="cat, prefs, stats or all"),
    base_url: str = typer.Option(
        DEFAULT_BASE_URL, "--url", "-u", help="Base URL of the Kori sync service"
    ),
    pet_id: str = typer.Option("default", "--pet", help="Pet identifier"),
) -> None:
    """Print the current state of an entity as JSON."""
    if entity != "all" and entity not in ENTITY_ROUTES:
        print(f"Error: unknown entity {entity!r}")
        raise typer.Exit(2)

    async def _get() -> None:
        path = "/poll" if entity == "all" else ENTITY_ROUTES[entity]
        async with httpx.AsyncClient(base_url=base_url) as client:
            response = await client.get(path, params={"pet_id": pet_id})
            response.raise_for_status()
            print(json.dumps(response.json(), indent=2))

    _run_with_error_handling(_get(), base_url)


@app.command()
def set_mood(
    mood: str = typer.Argument(..., help="The animation state to set"),
    base_url: str = typer.Option(
        DEFAULT_BASE_URL, "--url", "-u", help="Base URL of the Kori sync service"
    ),
    pet_id: str = typer.Option("default", "--pet", help="Pet identifier"),
) -> None:
    """Set the pet's animation state."""
    if mood not in ANIMATION_STATES:
        print(f"Error: unknown mood {mood!r}. Expected one of: {', '.join(ANIMATION_STATES)}")
        raise typer.Exit(2)

    async def _set_mood() -> None:
        result = await _post(base_url, "cat", pet_id, {"mood": mood})
        print(f"Mood set to: {result['mood']}")

    _run_with_error_handling(_set_mood(), base_url)


@app.command()
def update_prefs(
    student: Optional[bool] = typer.Option(
        None, "--student/--no-student", help="Toggle student mode"
    ),
    theme: Optional[str] = typer.Option(None, "--theme", help="UI theme"),
    timer: Optional[str] = typer.Option(
        None, "--timer", help="pomodoro, custom or focus"
    ),
    base_url: str = typer.Option(
        DEFAULT_BASE_URL, "--url", "-u", help="Base URL of the Kori sync service"
    ),
    pet_id: str = typer.Option("default", "--pet", help="Pet identifier"),
) -> None:
    """Update user preferences."""
    patch = _without_none(is_student=student, theme=theme, timer_method=timer)

    async def _update() -> None:
        print(json.dumps(await _post(base_url, "prefs", pet_id, patch), indent=2))

    _run_with_error_handling(_update(), base_url)


@app.command()
def update_stats(
    mood: Optional[str] = typer.Option(None, "--mood", help="Detected mood label"),
    temperature: Optional[float] = typer.Option(
        None, "--temperature", help="Room temperature in Celsius"
    ),
    focus: Optional[int] = typer.Option(None, "--focus", help="Focus level 0-10"),
    confidence: Optional[float] = typer.Option(
        None, "--confidence", help="Detection confidence 0-1"
    ),
    noise: Optional[float] = typer.Option(None, "--noise", help="Noise level"),
    base_url: str = typer.Option(
        DEFAULT_BASE_URL, "--url", "-u", help="Base URL of the Kori sync service"
    ),
    pet_id: str = typer.Option("default", "--pet", help="Pet identifier"),
) -> None:
    """Update sensor stats."""
    patch = _without_none(
        mood=mood,
        room_temperature=temperature,
        focus_level=focus,
        confidence=confidence,
        noise_pollution=noise,
    )

    async def _update() -> None:
        print(json.dumps(await _post(base_url, "stats", pet_id, patch), indent=2))

    _run_with_error_handling(_update(), base_url)


@app.command()
def watch(
    base_url: str = typer.Option(
        DEFAULT_BASE_URL, "--url", "-u", help="Base URL of the Kori sync service"
    ),
    pet_id: str = typer.Option("default", "--pet", help="Pet identifier"),
) -> None:
    """Stream state updates in real-time."""

    async def _watch() -> None:
        print(f"Streaming from {base_url}/events... (Ctrl+C to stop)")

        async with httpx.AsyncClient(timeout=None) as client:
            async with aconnect_sse(
                client, "GET", f"{base_url}/events", params={"pet_id": pet_id}
            ) as event_source:
                async for sse in event_source.aiter_sse():
                    _handle_sse_event(sse)

    _run_with_error_handling(_watch(), base_url)


@app.command()
def detect(
    image: Path = typer.Argument(..., exists=True, dir_okay=False, help="Face image"),
    base_url: str = typer.Option(
        DEFAULT_BASE_URL, "--url", "-u", help="Base URL of the Kori sync service"
    ),
    pet_id: str = typer.Option("default", "--pet", help="Pet identifier"),
) -> None:
    """Detect the mood in an image and push it as a stats update."""
    settings = get_settings()
    detector = HuggingFaceMoodDetector(
        settings.hf_token,
        model_id=settings.hf_model_id,
        base_url=settings.hf_inference_url,
        timeout=settings.integration_timeout,
    )

    async def _detect() -> None:
        try:
            detection = await detector.detect(image.read_bytes())
        except IntegrationError as e:
            print(f"Error: mood detection failed: {e}")
            raise typer.Exit(1)

        top = detection.top
        print(f"Detected {top.label} ({top.score:.2f})")
        await _post(
            base_url,
            "stats",
            pet_id,
            {"mood": top.label.lower(), "confidence": top.score},
        )

    _run_with_error_handling(_detect(), base_url)


# MARK: - Private Helpers


async def _post(
    base_url: str, entity: str, pet_id: str, patch: dict[str, Any]
) -> dict[str, Any]:
    async with httpx.AsyncClient(base_url=base_url) as client:
        response = await client.post(
            ENTITY_ROUTES[entity], params={"pet_id": pet_id}, json=patch
        )
        if response.status_code == 400:
            raise ValueError(response.json().get("error", "Bad request"))
        response.raise_for_status()
        return response.json()


def _without_none(**fields: Any) -> dict[str, Any]:
    return {name: value for name, value in fields.items() if value is not None}


def _format_event(message: dict[str, Any]) -> str:
    """Format one realtime message as a single line."""
    timestamp = datetime.now().strftime("%H:%M:%S")
    payload = message.get("payload")
    if message.get("type") == "cat:state" and isinstance(payload, dict):
        return f"{timestamp} > cat {payload.get('mood')} (energy {payload.get('energy')}, hunger {payload.get('hunger')})"
    return f"{timestamp} > {message.get('type')} {json.dumps(payload)}"


def _handle_sse_event(sse: ServerSentEvent) -> None:
    """Handle a single SSE event."""
    try:
        print(_format_event(json.loads(sse.data)))
    except json.JSONDecodeError as e:
        print(f"Warning: Could not parse SSE data: {sse.data} - {e}")


def _run_with_error_handling(coro: Coroutine[Any, Any, Any], base_url: str) -> None:
    """Run an async coroutine with standardized error handling."""
    try:
        asyncio.run(coro)
    except KeyboardInterrupt:
        print("\nStopped")
        raise typer.Exit(0)
    except typer.Exit:
        raise
    except httpx.ConnectError:
        print(f"Error: Could not connect to {base_url}")
        raise typer.Exit(1)
    except httpx.HTTPStatusError as e:
        print(f"Error: HTTP {e.response.status_code}")
        raise typer.Exit(1)
    except Exception as e:
        error_msg = str(e) if str(e) else f"Unknown error of type {type(e).__name__}"
        print(f"Error: {error_msg}")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
