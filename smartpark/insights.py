"""Occupancy insights and traffic scenario simulation backed by Ollama."""

import asyncio
import json
import logging
import re
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

import ollama

from .config import OllamaConfig
from .models import ParkingStats, ParkingStatus, SharedState, Spot

logger = logging.getLogger(__name__)

INSIGHT_PROMPT = """You are an expert Facility Manager AI. Analyze the current parking status provided below.

Current Stats:
- Cars: {occupied_cars}/{total_cars} occupied
- Motorcycles: {occupied_motos}/{total_motos} occupied
- Total Occupancy Rate: {occupancy_rate:.1f}%

Provide a concise, 2-sentence executive summary.
First sentence: Comment on the current congestion level.
Second sentence: Give a specific recommendation (e.g., "Open overflow lot", "Monitor Section B").
Tone: Professional and operational."""

SIMULATION_PROMPT = """I have a parking lot with {count} spots.
The spots are identified by IDs: {spot_ids}.

Scenario: "{scenario}"

Based on this scenario, decide which spots should be OCCUPIED and which should be FREE.
Return a JSON object where keys are spot IDs and values are strings: "OCCUPIED" or "FREE".
Do not return Markdown. Just the JSON string."""

UNAVAILABLE_MESSAGE = "Unable to generate insights at this time."


def _extract_json(text: str) -> Any:
    """Parse a JSON object out of model output, tolerating code fences."""
    match = re.search(r"\{.*\}", text, re.DOTALL)
    if not match:
        raise ValueError("No JSON object in model response")
    return json.loads(match.group(0))


def apply_statuses(spots: list[Spot], statuses: dict[str, Any]) -> list[Spot]:
    """Return spots with statuses replaced from an id -> status mapping.

    Unknown ids and unrecognised status values are ignored; spots missing
    from the mapping are returned unchanged.
    """
    now = datetime.now(timezone.utc)
    result = []
    for spot in spots:
        value = statuses.get(spot.id)
        try:
            status = ParkingStatus(str(value).upper()) if value is not None else None
        except ValueError:
            status = None
        if status is not None and status != spot.status:
            spot = replace(spot, status=status, last_updated=now)
        result.append(spot)
    return result


class InsightsClient:
    """Async wrapper around Ollama for the dashboard's AI features."""

    def __init__(self, config: OllamaConfig):
        self.config = config
        self._client = ollama.Client(host=config.base_url)

    async def _generate(self, prompt: str) -> str:
        # Run synchronous ollama call in thread pool
        loop = asyncio.get_running_loop()
        response = await loop.run_in_executor(
            None,
            lambda: self._client.chat(
                model=self.config.model,
                messages=[{"role": "user", "content": prompt}],
            ),
        )
        return response["message"]["content"] or ""

    async def suggest(self, state: SharedState) -> str:
        """Summarise the occupancy of a document in two sentences."""
        stats = ParkingStats.from_spots(state.spots)
        prompt = INSIGHT_PROMPT.format(
            occupied_cars=stats.occupied_cars,
            total_cars=stats.total_cars,
            occupied_motos=stats.occupied_motos,
            total_motos=stats.total_motos,
            occupancy_rate=stats.occupancy_rate,
        )
        try:
            text = await self._generate(prompt)
        except Exception as e:
            logger.error(f"Insight generation failed: {e}")
            return UNAVAILABLE_MESSAGE
        return text.strip() or "No insights available."

    async def simulate(self, state: SharedState, scenario: str) -> list[Spot]:
        """Ask the model how a scenario changes occupancy.

        Raises:
            ValueError: If the model does not return a usable JSON object.
        """
        prompt = SIMULATION_PROMPT.format(
            count=len(state.spots),
            spot_ids=json.dumps([s.id for s in state.spots]),
            scenario=scenario,
        )
        text = await self._generate(prompt)
        statuses = _extract_json(text)
        if not isinstance(statuses, dict):
            raise ValueError("Simulation response is not a JSON object")

        logger.info(f"Simulated scenario {scenario!r} over {len(state.spots)} spots")
        return apply_statuses(state.spots, statuses)

    async def check_connection(self) -> bool:
        """Check if Ollama is reachable."""
        try:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._client.list)
            return True
        except Exception:
            return False
