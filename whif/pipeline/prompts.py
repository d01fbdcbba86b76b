"""Prompt templates and structured-output schemas for each stage.

Schemas are strict JSON schemas (every property required, no extra keys)
so they are accepted by OpenAI structured outputs, Claude tool input and
Gemini's OpenAI-compatible endpoint alike.
"""

import json

# =============================================================================
# Extract
# =============================================================================

EXTRACT_SCHEMA = {
    "type": "object",
    "properties": {
        "statements": {
            "type": "array",
            "items": {"type": "string"},
            "description": "Array of impact statements",
        }
    },
    "required": ["statements"],
    "additionalProperties": False,
}


def build_extract_prompt(proposal: str) -> str:
    return f"""You are an expert analyst with a talent for deconstructing complex ideas into simple, atomic statements.

Task: Take the user's proposal and identify all of its concrete components. Each component should be rephrased as a single, unambiguous statement of impact or action.

Input proposal: {proposal}

Example:
Input proposal: "We should build a fleet of electric driverless vehicles for our city and replace trains to provide efficient transport for remote areas"
Output statements: ["Build a fleet of electric driverless vehicles", "Replace existing trains", "Provide efficient transport for remote areas"]"""


# =============================================================================
# Downstream impacts
# =============================================================================

DOWNSTREAM_SCHEMA = {
    "type": "object",
    "properties": {
        "impacts": {
            "type": "array",
            "items": {"type": "string"},
            "description": "Array of downstream impacts",
        }
    },
    "required": ["impacts"],
    "additionalProperties": False,
}


def build_downstream_prompt(statement: str) -> str:
    return f"""You are a systems thinking expert. You understand how a single action can ripple through an ecosystem.

Task: Given a single impact statement, generate a list of 5-10 direct and indirect downstream consequences. Think broadly about resources, labor, environment, social effects, and economic factors.

Input impact statement: {statement}"""


# =============================================================================
# Categorize
# =============================================================================

CATEGORIZE_SCHEMA = {
    "type": "object",
    "properties": {
        "categories": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "name": {"type": "string"},
                    "impacts": {"type": "array", "items": {"type": "string"}},
                },
                "required": ["name", "impacts"],
                "additionalProperties": False,
            },
            "description": "Categories, each listing the input impacts it contains",
        }
    },
    "required": ["categories"],
    "additionalProperties": False,
}


def build_categorize_prompt(impacts: list[str]) -> str:
    listed = "\n".join(impacts)
    return f"""You are an expert categorizer and organizer.

Task: Take a list of impact statements and group them into logical categories. The categories should be high-level and relevant to a sustainability analysis (e.g., "Resource Impact", "Labor & Social", "Environmental", "Economic", "Governance").

Every input statement must appear in exactly one category, copied verbatim.

Input impact statements:
{listed}"""


# =============================================================================
# Research + evaluate
# =============================================================================


def build_research_prompt(category: str, impacts: list[str]) -> str:
    listed = "\n".join(impacts)
    return f"""You are a meticulous researcher. Given an impact category and its statements, find concrete, numerical data that bears on them.

Impact category: {category}
Statements:
{listed}"""


EVALUATE_SCHEMA = {
    "type": "object",
    "properties": {
        "score": {
            "type": "number",
            "description": "Numerical score between -1.0 and +1.0",
        }
    },
    "required": ["score"],
    "additionalProperties": False,
}


def build_evaluate_prompt(category: str, impacts: list[str], research: str) -> str:
    listed = "\n".join(impacts)
    return f"""You are an impartial judge. Your judgment is based on the principles of Doughnut Economics and the UN's Sustainable Development Goals (SDGs).

Research findings: {research}
Impact category: {category}
Statements:
{listed}

Analyze the research findings and assign a numerical score between -1.0 (highly negative) and +1.0 (highly positive) to the category.

Scoring criteria:
- Positive score: the impact measurably improves a social or environmental metric
- Negative score: the impact depletes a critical resource, harms a social foundation, or negatively affects an SDG
- The magnitude of the score should be proportional to the magnitude of the impact"""


# =============================================================================
# Summarize
# =============================================================================

SUMMARIZE_SCHEMA = {
    "type": "object",
    "properties": {
        "summary": {
            "type": "string",
            "description": "Well-formatted Markdown suitable for direct display",
        }
    },
    "required": ["summary"],
    "additionalProperties": False,
}


def build_summarize_prompt(
    proposal: str, scores: dict[str, float], findings: dict[str, str]
) -> str:
    return f"""You are a senior analyst and advisor. Your goal is to provide a clear, concise, and professional summary.

Combine the original proposal, the category scores, and the research findings to generate a final summary and recommendation.

Summary structure:
1. A brief, one-sentence overview of the proposal's overall impact.
2. A point-by-point breakdown of each category's score and the justification from the research.
3. A final, explicit recommendation.

Recommendation logic: a negative impact is only considered "acceptable" if the total positive score is at least 10 times the absolute value of the total negative score. If this condition is not met, the recommendation is to **not** proceed with the proposal as-is.

Original proposal: {proposal}
Category scores: {json.dumps(scores)}
Research findings: {json.dumps(findings)}"""
