"""Gemini-backed review drafting and phrase mining."""

from __future__ import annotations

import json
import logging
import re
from typing import Optional

import google.generativeai as genai
from flask import current_app

from errors import ApiError

logger = logging.getLogger(__name__)

MAX_DESCRIPTION_CHARS = 1200
MAX_SUMMARY_CHARS = 50000


def generate_text(prompt: str, temperature: float = 0.4) -> str:
    """Run one prompt through the configured Gemini model and return its text."""
    api_key = current_app.config.get('GEMINI_API_KEY')
    if not api_key:
        raise ApiError(503, 'AI_NOT_CONFIGURED')
    genai.configure(api_key=api_key)
    model_name = current_app.config.get('GEMINI_MODEL', 'gemini-2.5-flash').replace('models/', '')
    model = genai.GenerativeModel(model_name)
    logger.info("Generating text with model=%s prompt_chars=%s", model_name, len(prompt))
    response = model.generate_content(
        prompt,
        generation_config={"temperature": temperature},
    )
    return (response.text or '').strip()


def extract_json(raw: str):
    """Parse the outermost JSON object in a model reply, ignoring fences and prose."""
    start = raw.find('{')
    end = raw.rfind('}')
    candidate = raw[start:end + 1] if start != -1 and end != -1 else raw
    return json.loads(candidate)


def dedupe_keep_first(values):
    seen = set()
    out = []
    for value in values:
        key = value.lower()
        if key in seen:
            continue
        seen.add(key)
        out.append(value)
    return out


# ===== GOOD REVIEW DRAFTS =====

def build_good_review_prompt(company: str, description: Optional[str], phrases, items) -> str:
    lines = [
        "You write short, natural customer reviews for a local business.",
        f"Business: {company}",
    ]
    if description:
        lines.append(f"About the business: {description[:MAX_DESCRIPTION_CHARS]}")
    if items:
        lines.append("Services the customer received: " + "; ".join(items))
    lines.append("Work these themes into the reviews naturally: " + "; ".join(phrases))
    lines.extend([
        "Write two different positive reviews of 2-4 sentences each, in the first person.",
        "Do not invent prices, names or dates.",
        'Return ONLY valid JSON: {"review_1": "...", "review_2": "..."}',
    ])
    return "\n".join(lines)


def parse_good_reviews(raw: str) -> list[str]:
    try:
        data = extract_json(raw)
        reviews = [str(data.get('review_1') or '').strip(), str(data.get('review_2') or '').strip()]
        reviews = [r for r in reviews if r]
        if reviews:
            return reviews
    except (ValueError, AttributeError):
        pass
    cleaned = re.sub(r'```(?:json)?', '', raw).strip()
    parts = [p.strip() for p in re.split(r'\n\s*\n', cleaned) if p.strip()]
    return parts[:2]


def generate_good_reviews(company: str, description: Optional[str], phrases, items) -> list[str]:
    raw = generate_text(build_good_review_prompt(company, description, phrases, items), temperature=0.9)
    reviews = parse_good_reviews(raw)
    if not reviews:
        logger.warning("Unusable review draft output: %s", raw[:200])
        raise ApiError(502, 'BAD_MODEL_OUTPUT')
    return reviews


# ===== PHRASE MINING =====

def propose_phrases(reviews: list[dict]) -> list[dict]:
    """Ask the model for ~10 recurring topics with mention counts and sentiment."""
    prompt = "\n".join([
        "You are extracting candidate phrases from reviews.",
        "INPUT:",
        json.dumps({'reviews': reviews}, indent=2),
        'Propose about 10 short phrases (topics) commonly discussed, each with a clear good or bad sentiment.',
        'For each phrase give "phrase" (max 120 chars), "mention_count" (how many times it is mentioned '
        'across all reviews, case-insensitive) and "sentiment" ("good" or "bad").',
        'Avoid near-duplicates. Return ONLY valid JSON: {"phrases": [{"phrase": "...", '
        '"mention_count": 1, "sentiment": "good"}]}',
    ])
    raw = generate_text(prompt, temperature=0.2)
    try:
        parsed = extract_json(raw)
    except ValueError:
        raise ApiError(502, 'MODEL_PARSE_ERROR', raw=raw[:2000])
    if not isinstance(parsed, dict) or not isinstance(parsed.get('phrases'), list):
        raise ApiError(502, 'BAD_MODEL_SHAPE')
    return parsed['phrases']


def summarise_reviews(reviews: list[str], positive: bool = True) -> list[str]:
    """Recurring praise (or complaint) phrases across the given review texts."""
    sliced = []
    total = 0
    for review in reviews:
        if total + len(review) > MAX_SUMMARY_CHARS:
            break
        sliced.append(review)
        total += len(review)

    focus = 'praise' if positive else 'complain about'
    prompt = "\n".join([
        "You are given a JSON array of real customer reviews about a business.",
        f"Identify the recurring phrases customers {focus} (3-7 words each).",
        "Prefer concrete aspects such as speed, communication, pricing clarity or results.",
        "Output 7-15 items if there is enough evidence, fewer otherwise.",
        'Return ONLY valid JSON: {"phrases": ["..."]}',
        "INPUT_REVIEWS:",
        json.dumps(sliced, indent=2),
    ])
    raw = generate_text(prompt, temperature=0.4)
    try:
        phrases = [str(p).strip() for p in extract_json(raw).get('phrases') or []]
    except (ValueError, AttributeError):
        lines = re.sub(r'```(?:json)?', '', raw).splitlines()
        phrases = [re.sub(r'^[\-\*\d\.\)\s]+', '', line).strip() for line in lines]
    phrases = [p.strip('"').strip() for p in phrases if p.strip()]
    return dedupe_keep_first(phrases[:15])
