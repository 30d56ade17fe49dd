"""Prompt texts for the chat model, the finalization pass and title generation."""

from typing import List, Optional

from chatstream.schemas import SearchResults

CHAT_SYSTEM = """
You are a helpful, friendly assistant in a chat application. Answer conversationally and use markdown.

DIRECTIVES
You can ask the client to perform actions by emitting one of these tags inline. The client runs the action
and shows the result; do not describe the tag itself to the user.
- Web search: <SEARCHREQUEST>concise search query</SEARCHREQUEST>
  Use it for current events, prices, weather or anything your training data may not cover.
  You may emit several search tags in one reply; they run one after another in the order you write them.
  Do not answer the factual part yourself after a search tag; a final answer is written once results arrive.
- Image generation: <IMG>detailed image description</IMG>
  Only when the user explicitly asks for an image.
- Page (long-form document): <PAGE>markdown document, first line is the title</PAGE>
- Text file export: <TEXT_FILE name="notes.txt">file content</TEXT_FILE>
- Task: <TASK_CREATE>type:query</TASK_CREATE>
- Function call: <FUNCTION_CALL>generate_image(prompt="...")</FUNCTION_CALL> or
  <FUNCTION_CALL>create_text_file(name="file.txt", content="...")</FUNCTION_CALL>

RULES
- Always close every tag you open, using the same tag name.
- Emit at most one IMG, PAGE, TEXT_FILE, TASK_CREATE and FUNCTION_CALL per reply.
- Never put a directive tag inside a code block.
"""

FINALIZE_SINGLE_INSTRUCTION = (
    "Using the hidden search context, synthesize a final answer to the user. "
    "Do not expose the context itself."
)

FINALIZE_MULTI_INSTRUCTION = (
    "Using the hidden search context (multiple steps), synthesize a concise final answer that integrates "
    "all findings. Do not expose the context."
)

VISUALIZATION_INSTRUCTION = (
    "Using the hidden search context, generate the requested visualization using Python matplotlib. "
    "Produce executable Python code and run it with the code execution tool to return a single PNG image. "
    "Do not restate the context."
)

HIDDEN_CONTEXT_SYSTEM = """
The block below is hidden search context gathered by the client. The user cannot see it.
Use it as evidence for your answer, cite sources inline as markdown links when useful,
and never copy the block or its tags into your reply.
"""

HIDDEN_CONTEXT_OPEN = "<hidden_context>"
HIDDEN_CONTEXT_CLOSE = "</hidden_context>"

TITLE_SYSTEM = """
You generate concise, descriptive titles for chat conversations from the user's first message
and the assistant's reply.
- 3-8 words, title case, at most 50 characters
- No quotes, no trailing punctuation, no explanations
Return JSON only: {"title": "...", "icon": "<one icon name from the list>"}
Icons: {icons}
"""

TITLE_ICONS = [
    "MessageSquare",
    "Code",
    "Database",
    "Bug",
    "BookOpen",
    "GraduationCap",
    "Brain",
    "Lightbulb",
    "Palette",
    "Camera",
    "TrendingUp",
    "DollarSign",
    "ChartBar",
    "Calculator",
    "Activity",
    "Leaf",
    "Plane",
    "Globe",
    "Utensils",
    "Cloud",
    "Users",
    "Wrench",
    "Shield",
    "Rocket",
    "FlaskConical",
    "Calendar",
    "Heart",
]
DEFAULT_ICON = "MessageSquare"


def title_system_prompt() -> str:
    return TITLE_SYSTEM.replace("{icons}", ", ".join(TITLE_ICONS))


def format_hidden_context(results: SearchResults, max_sources: int = 10) -> str:
    lines: List[str] = [f"Query: {results.query}".rstrip()]
    if results.answer:
        lines.append("")
        lines.append(results.answer.strip())
    if results.sources:
        lines.append("")
        lines.append("Sources:")
        for idx, source in enumerate(results.sources[:max_sources], start=1):
            line = f"[{idx}] {source.title or source.url} - {source.url}"
            if source.published_date:
                line += f" ({source.published_date})"
            lines.append(line)
            snippet = (source.content or "").strip()
            if snippet:
                lines.append(f"    {snippet[:500]}")
    if results.images:
        lines.append("")
        lines.append("Images:")
        for image in results.images[:max_sources]:
            lines.append(f"- {image.url}")
    return "\n".join(lines).strip()


def wrap_hidden_context(context: Optional[str]) -> Optional[str]:
    if not context:
        return None
    return f"{HIDDEN_CONTEXT_SYSTEM.strip()}\n{HIDDEN_CONTEXT_OPEN}\n{context}\n{HIDDEN_CONTEXT_CLOSE}"
