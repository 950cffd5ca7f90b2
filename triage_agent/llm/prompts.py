"""
prompts.py — Prompt templates for analysis, rating and query refinement.

Placeholders use single braces (e.g. {message}); literal JSON braces in the
instructions are doubled.
"""

from langchain_core.prompts import PromptTemplate


PRODUCT_ANALYSIS_PROMPT = PromptTemplate.from_template(
    "You help a support team triage bug reports posted in chat. Read the user's "
    "message (and any attached screenshots) and work out which product area it "
    "concerns.\n\n"
    "Reply ONLY with valid JSON of the form:\n"
    '{{"product": "<product area>", "confidence": <0.0-1.0>, '
    '"reasoning": "<one or two sentences>", '
    '"image_description": "<what the screenshots show, or null>"}}\n'
    "<message>\n{message}\n</message>"
)


RATE_TICKETS_PROMPT = PromptTemplate.from_template(
    "You are matching a user's bug report against existing issue-tracker tickets.\n"
    "Score every ticket from 1 to 10 for how likely it describes the same problem. "
    "Return ONLY tickets scoring {threshold} or higher, sorted by score, highest first.\n\n"
    "Reply ONLY with a valid JSON array:\n"
    '[{{"title": "<title>", "url": "<url>", "score": <1-10>, "reason": "<one sentence>"}}]\n'
    "Reply with [] if nothing qualifies.\n\n"
    "<User message>\n{message}\n</User message>\n\n"
    "<Image description>\n{image_description}\n</Image description>\n\n"
    "<Tickets>\n{tickets}\n</Tickets>"
)


REFINE_QUERY_PROMPT = PromptTemplate.from_template(
    "A user is searching an issue tracker for tickets related to their problem. "
    "The previous search did not find what they wanted and they have added more detail.\n"
    "Write ONE improved search query (plain text, at most 12 words, no quotes) "
    "that combines the original query with the new information.\n\n"
    "<Original query>\n{original_query}\n</Original query>\n\n"
    "<New input>\n{new_text}\n</New input>\n\n"
    "<Prior analysis>\n{analysis}\n</Prior analysis>"
)
