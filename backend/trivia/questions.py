"""Question provider contract and the fallback policy around it.

Generating questions is somebody else's job. What lives here is the part the
game cannot do without: checking what a provider hands back and substituting
deterministic questions when it fails, so a round never stalls.
"""
from __future__ import annotations

import logging
import uuid
from typing import Iterable, List, Protocol, Sequence

from .models import TIME_LIMITS, Answer, Difficulty, Question

logger = logging.getLogger(__name__)

ANSWERS_PER_QUESTION = 4

FALLBACK_TOPICS = [
    "World History",
    "Science & Nature",
    "Geography",
    "Literature",
    "Movies & TV",
    "Sports",
    "Technology",
    "Music",
    "Art & Culture",
    "Food & Cooking",
    "Space & Astronomy",
    "Animals",
    "Politics",
    "Philosophy",
    "Mathematics",
    "Medicine",
    "Architecture",
    "Religion",
]


class QuestionProvider(Protocol):
    async def generate_questions(
        self,
        topic: str,
        difficulty: Difficulty,
        count: int,
        exclude_texts: Sequence[str],
    ) -> List[Question]:
        ...

    async def generate_topics(self, count: int) -> List[str]:
        ...


def time_limit_for(difficulty: Difficulty) -> int:
    return TIME_LIMITS[Difficulty(difficulty)]


def fallback_questions(topic: str, difficulty: Difficulty, count: int, start: int = 0) -> List[Question]:
    questions = []
    for n in range(start + 1, start + count + 1):
        questions.append(
            Question(
                id=str(uuid.uuid4()),
                text=f"What is a key fact about {topic}? (#{n})",
                answers=[
                    Answer(text="This is a fallback question", is_correct=True),
                    Answer(text="The question service is temporarily unavailable"),
                    Answer(text="Please try again later"),
                    Answer(text="The system is experiencing issues"),
                ],
                correct_answer_index=0,
                explanation="This is a fallback question used when no generated question was available.",
                difficulty=difficulty,
                topic=topic,
                time_limit=time_limit_for(difficulty),
            )
        )
    return questions


def fallback_topics(count: int) -> List[str]:
    return FALLBACK_TOPICS[: max(1, count)]


def is_valid_question(question: Question) -> bool:
    if not question.text.strip():
        return False
    if len(question.answers) != ANSWERS_PER_QUESTION:
        return False
    correct = [i for i, a in enumerate(question.answers) if a.is_correct]
    return len(correct) == 1 and correct[0] == question.correct_answer_index


def _normalise(question: Question, topic: str, difficulty: Difficulty) -> Question:
    updates = {"topic": topic, "difficulty": difficulty}
    if question.time_limit <= 0:
        updates["time_limit"] = time_limit_for(difficulty)
    return question.model_copy(update=updates)


async def fetch_round_questions(
    provider: QuestionProvider,
    topic: str,
    difficulty: Difficulty,
    count: int,
    history: Iterable[str],
) -> List[Question]:
    """Return exactly ``count`` playable questions for a round.

    Invalid or repeated items are dropped and the batch is topped up with
    fallback questions. A provider error yields a full fallback batch.
    """
    history = list(history)
    seen = {text.strip().lower() for text in history}
    try:
        raw = await provider.generate_questions(topic, difficulty, count, history)
    except Exception as exc:
        logger.warning("question provider failed for topic %r (%s); using fallback questions", topic, exc)
        return fallback_questions(topic, difficulty, count)

    questions: List[Question] = []
    for item in raw or []:
        if not isinstance(item, Question) or not is_valid_question(item):
            continue
        key = item.text.strip().lower()
        if key in seen:
            continue
        seen.add(key)
        questions.append(_normalise(item, topic, difficulty))
        if len(questions) == count:
            break

    missing = count - len(questions)
    if missing:
        logger.warning(
            "question provider returned %d usable questions for %r, padding %d with fallback",
            len(questions),
            topic,
            missing,
        )
        questions.extend(fallback_questions(topic, difficulty, missing, start=len(questions)))
    return questions


async def fetch_topics(provider: QuestionProvider, count: int) -> List[str]:
    try:
        topics = await provider.generate_topics(count)
    except Exception as exc:
        logger.warning("topic generation failed (%s); using fallback topics", exc)
        return fallback_topics(count)

    topics = [t.strip() for t in topics or [] if isinstance(t, str) and t.strip()]
    if not topics:
        logger.warning("topic generation returned nothing usable; using fallback topics")
        return fallback_topics(count)
    return topics[:count]


class FallbackQuestionProvider:
    """Provider that only ever serves the deterministic fallback set.

    Used when no external generator is wired in, so the service is playable
    out of the box.
    """

    async def generate_questions(self, topic, difficulty, count, exclude_texts):
        return fallback_questions(topic, difficulty, count)

    async def generate_topics(self, count):
        return fallback_topics(count)
