"""Prompt templates for the vision model."""

REVIEW_SYSTEM = (
    "You are a senior UI/UX reviewer. You look at one screenshot of a web page and "
    "report concrete visual problems. Do not think step by step. "
    "Respond only with valid JSON."
)

REVIEW_TEMPLATE = """Review this screenshot of {url}.
It was captured at the "{viewport}" viewport ({width}x{height} pixels), so judge
layout and sizing for that screen size.

Report at most 10 issues. Respond with JSON in exactly this shape:
{{
  "summary": "one or two sentences about the overall quality",
  "issues": [
    {{
      "severity": "critical | warning | suggestion",
      "category": "layout | typography | components | spacing | visual-hierarchy | accessibility | responsive-fit",
      "location": "where on the page",
      "description": "what is wrong",
      "recommendation": "how to fix it"
    }}
  ]
}}
"""

REFORMAT_SYSTEM = "You convert UI review text into structured JSON. Respond only with valid JSON."

REFORMAT_TEMPLATE = """Convert the following UI review into JSON with a "summary" string and an
"issues" array. Each issue needs "severity" (critical, warning or suggestion),
"category" (layout, typography, components, spacing, visual-hierarchy,
accessibility or responsive-fit), "location", "description" and "recommendation".

Review text:
{raw_text}
"""


def review_prompt(url: str, viewport) -> str:
    return REVIEW_TEMPLATE.format(
        url=url, viewport=viewport.name, width=viewport.width, height=viewport.height
    )


def reformat_prompt(raw_text: str) -> str:
    return REFORMAT_TEMPLATE.format(raw_text=raw_text)
