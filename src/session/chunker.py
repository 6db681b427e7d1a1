"""Split long markdown into transport-sized pieces on paragraph or line breaks."""


def split_markdown_into_chunks(text: str, max_chars: int) -> list[str]:
    if not text:
        return []
    if max_chars <= 0:
        return [text]

    chunks: list[str] = []
    remaining = text
    while len(remaining) > max_chars:
        window = remaining[:max_chars]
        cut = window.rfind("\n\n")
        if cut <= 0:
            cut = window.rfind("\n")
        if cut <= 0:
            cut = max_chars
        chunks.append(remaining[:cut])
        # break characters stay at the head of the remainder
        remaining = remaining[cut:]

    if remaining:
        chunks.append(remaining)
    return chunks


def truncate_for_display(text: str, max_chars: int, suffix: str = "\n\n...(truncated)") -> str:
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    allowed = max(0, max_chars - len(suffix))
    return f"{text[:allowed]}{suffix}"
