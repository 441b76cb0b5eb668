"""
Question Generation Agent - turns study material into raw trivia candidates via Gemini.

Responsibilities:
- Build a mode-aware prompt (Jeopardy asks for board columns plus a final-round question)
- Parse the JSON reply, dropping candidates that fail validation
- Return [] on any failure; the coordinator reports that as "0 questions ready"

Called from the coordinator's background generation task, never inline with
session creation.
"""
import json
import logging
import re
from typing import Any, List, Optional

from pydantic import ValidationError as PydanticValidationError

from config import settings
from models.game import GameConfig, GameType, Difficulty, RawQuestion

logger = logging.getLogger(__name__)

# Cap on the study source pasted into the prompt
MAX_SOURCE_CHARS = 12000


# ── Gemini client cache ───────────────────────────────────────────────────────
_genai_client: Optional[Any] = None


async def _call_gemini_json(prompt: str) -> Optional[str]:
    """Return raw text from a single Gemini generate_content call, or None on failure."""
    global _genai_client

    if not settings.gemini_api_key:
        logger.warning("[questions] GEMINI_API_KEY not set - skipping generation")
        return None

    from google import genai
    from google.genai import types

    if _genai_client is None:
        _genai_client = genai.Client(api_key=settings.gemini_api_key)

    try:
        response = await _genai_client.aio.models.generate_content(
            model=settings.question_model,
            contents=prompt,
            config=types.GenerateContentConfig(
                temperature=0.7,
                max_output_tokens=8192,
                response_mime_type="application/json",
            ),
        )
        return response.text.strip() if response.text else None
    except Exception as exc:
        logger.error("[questions] Gemini call failed: %s", exc)
        return None


def _strip_fences(raw: str) -> str:
    text = raw.strip()
    if text.startswith("```"):
        text = re.sub(r"^```[a-zA-Z]*\n?", "", text)
        text = re.sub(r"\n?```$", "", text.strip())
    return text


def parse_questions(raw: str) -> List[RawQuestion]:
    """Parse a JSON array of candidates. Invalid items are skipped, not fatal."""
    try:
        items = json.loads(_strip_fences(raw))
    except json.JSONDecodeError as exc:
        logger.warning("[questions] Reply was not JSON: %s", exc)
        return []
    if isinstance(items, dict):
        items = items.get("questions", [])
    if not isinstance(items, list):
        return []

    questions: List[RawQuestion] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        try:
            q = RawQuestion(**item)
        except PydanticValidationError as exc:
            logger.debug("[questions] Dropping candidate: %s", exc)
            continue
        if not q.question.strip() or not q.correct_answer.strip():
            continue
        questions.append(q)
    return questions


class QuestionGenerator:
    """Asks Gemini for trivia candidates drawn from a study source."""

    def build_prompt(
        self, study_source: Optional[str], game_type: GameType, config: GameConfig
    ) -> str:
        source = (study_source or "").strip()[:MAX_SOURCE_CHARS]
        topic = (
            f"Base every question on this study material:\n---\n{source}\n---\n"
            if source
            else "Use general knowledge.\n"
        )
        if config.categories:
            topic += f"Restrict questions to these categories: {', '.join(config.categories)}.\n"
        if config.difficulty == Difficulty.MIXED:
            difficulty = "Mix easy, medium and hard questions."
        else:
            difficulty = f"All questions should be {config.difficulty.value}."

        shape = (
            '{"question": "...", "options": ["...", "..."], "correct_answer": "...", '
            '"explanation": "...", "category": "...", "difficulty": "easy|medium|hard"'
        )
        if game_type == GameType.JEOPARDY:
            layout = (
                f"Produce a Jeopardy board of {config.question_count} questions spread over "
                f"at most 5 categories. Give each a column_position from 1 (easiest) to 5 "
                f"(hardest). Then add exactly one extra question with is_final_round true.\n"
                f"Jeopardy questions are short answer: leave options empty.\n"
            )
            shape += ', "column_position": 1, "is_final_round": false}'
        elif game_type == GameType.FLASHCARDS:
            layout = (
                f"Produce {config.question_count} flashcards: a prompt on the front, a concise "
                f"answer on the back. Leave options empty.\n"
            )
            shape += "}"
        else:
            layout = (
                f"Produce {config.question_count} multiple choice questions with 4 options each. "
                f"correct_answer must be one of the options, copied exactly.\n"
            )
            shape += "}"

        return (
            f"You write trivia questions for a multiplayer study game.\n\n"
            f"{topic}{layout}{difficulty}\n\n"
            f"Return ONLY a valid JSON array with no markdown fences:\n[{shape}]"
        )

    async def generate(
        self,
        study_source: Optional[str],
        game_type: GameType,
        config: GameConfig,
    ) -> List[RawQuestion]:
        raw = await _call_gemini_json(self.build_prompt(study_source, game_type, config))
        if not raw:
            return []
        questions = parse_questions(raw)
        logger.info("[questions] Generated %d candidates for %s", len(questions), game_type.value)
        return questions


question_generator = QuestionGenerator()
