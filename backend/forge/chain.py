"""
Generation chain: an ordered list of async stages, each turning a
StageInput into text. The pipeline treats every stage as opaque; the final
stage's text is what gets extracted.

default_chain() wires four Claude-backed stages:
  architecture → initial code → review → final code
"""

import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable

import anthropic

from forge.config import Settings
from forge.sse_utils import utc_timestamp

logger = logging.getLogger(__name__)


@dataclass
class StageInput:
    prompt: str
    previous: str = ""
    outputs: dict[str, str] = field(default_factory=dict)


StageFn = Callable[[StageInput], Awaitable[str]]


@dataclass
class ChainStage:
    name: str
    run: StageFn


class GenerationChain:
    def __init__(self, stages: list[ChainStage]):
        self.stages = list(stages)

    def __len__(self):
        return len(self.stages)

    def __iter__(self):
        return iter(self.stages)


# ---------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------

ARCHITECTURE_PROMPT = """You are a game architect. Given a game idea, describe the game loop,
entities, controls, scoring, and which engine fits (Phaser for 2D, Babylon.js for 3D,
or plain React + canvas). Keep it concise. Do not write code."""

CODE_PROMPT = """You are a senior game developer writing a Vite + React + TypeScript project.
Write every file as a block that starts with a delimiter line:

// === src/App.tsx ===
<file content>

// === src/main.tsx ===
<file content>

Required: src/App.tsx and src/main.tsx. Optional: src/components/GameComponent.tsx,
src/App.css, src/index.css. Do not write package.json, index.html, or config files.
Do not use Next.js."""

REVIEW_PROMPT = """You are a code reviewer for browser games. List concrete bugs, missing imports,
and broken game logic in the code below. Be specific and brief."""

FINAL_PROMPT = CODE_PROMPT + """

Apply the review feedback and output the complete corrected files, every file in full."""


# ---------------------------------------------------------------
# Claude-backed stages
# ---------------------------------------------------------------

_client = None


def _get_client(settings: Settings):
    global _client
    if _client is None:
        api_key = os.getenv("ANTHROPIC_API_KEY") or settings.anthropic_api_key
        _client = anthropic.AsyncAnthropic(api_key=api_key)
    return _client


def claude_stage(name: str, system_prompt: str, build_message: Callable[[StageInput], str], settings: Settings) -> ChainStage:
    async def run(stage_input: StageInput) -> str:
        client = _get_client(settings)
        t0 = time.time()
        raw = ""
        async with client.messages.stream(
            model=settings.default_model,
            max_tokens=settings.stage_max_tokens,
            system=system_prompt,
            messages=[{"role": "user", "content": build_message(stage_input)}],
        ) as stream:
            async for chunk in stream.text_stream:
                raw += chunk
            response = await stream.get_final_message()

        usage = getattr(response, "usage", None)
        tokens_in = getattr(usage, "input_tokens", 0) if usage else 0
        tokens_out = getattr(usage, "output_tokens", 0) if usage else 0
        logger.info(
            "[chain] %s: %.1fs, %sin/%sout, %d chars",
            name, time.time() - t0, tokens_in, tokens_out, len(raw),
        )
        return raw

    return ChainStage(name=name, run=run)


def default_chain(settings: Settings) -> GenerationChain:
    return GenerationChain([
        claude_stage(
            "Architecture", ARCHITECTURE_PROMPT,
            lambda s: f"Game idea:\n{s.prompt}",
            settings,
        ),
        claude_stage(
            "Initial Code", CODE_PROMPT,
            lambda s: f"Game idea:\n{s.prompt}\n\nArchitecture:\n{s.previous}",
            settings,
        ),
        claude_stage(
            "Review", REVIEW_PROMPT,
            lambda s: s.previous,
            settings,
        ),
        claude_stage(
            "Final Code", FINAL_PROMPT,
            lambda s: (
                f"Game idea:\n{s.prompt}\n\nCode:\n{s.outputs.get('Initial Code', '')}"
                f"\n\nReview:\n{s.previous}"
            ),
            settings,
        ),
    ])


# ---------------------------------------------------------------
# Stage logs
# ---------------------------------------------------------------

def write_stage_log(logs_dir: str, chat_id: int, step: int, stage: str, stage_input: StageInput, output: str) -> str | None:
    """Write one stage's input and response as JSON. Returns the path, or None on failure."""
    if not logs_dir:
        return None
    slug = stage.lower().replace(" ", "-")
    path = os.path.join(logs_dir, f"chat-{chat_id}", f"{step:02d}-{slug}.json")
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump({
                "chatId": chat_id,
                "step": step,
                "stage": stage,
                "prompt": stage_input.prompt,
                "previous": stage_input.previous,
                "response": output,
                "timestamp": utc_timestamp(),
            }, f, indent=2)
    except OSError as e:
        logger.error("[chain] Could not write stage log %s: %s", path, e)
        return None
    return path
