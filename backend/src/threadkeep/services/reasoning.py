"""Extraction of ``<think>`` reasoning spans from streamed content.

Tags can be split across chunk boundaries, so the parser carries a
possibly-partial tag over to the next chunk instead of emitting it.
"""

from dataclasses import dataclass

START_TAG = "<think>"
END_TAG = "</think>"


@dataclass
class ReasoningParserState:
    in_reasoning: bool = False
    carry: str = ""


@dataclass
class ParsedChunk:
    content: str = ""
    reasoning: str = ""


def extract_reasoning(state: ReasoningParserState, chunk: str | None) -> ParsedChunk:
    """Split one chunk into answer text and reasoning text, updating ``state``."""
    text = state.carry + (chunk or "")
    state.carry = ""
    content = []
    reasoning = []

    while text:
        if state.in_reasoning:
            end = text.find(END_TAG)
            if end == -1:
                partial = text.rfind("</")
                if partial != -1 and partial > len(text) - len(END_TAG):
                    reasoning.append(text[:partial])
                    state.carry = text[partial:]
                else:
                    reasoning.append(text)
                text = ""
            else:
                reasoning.append(text[:end])
                text = text[end + len(END_TAG):]
                state.in_reasoning = False
        else:
            start = text.find(START_TAG)
            if start == -1:
                partial = text.rfind("<")
                if partial != -1 and partial > len(text) - len(START_TAG):
                    content.append(text[:partial])
                    state.carry = text[partial:]
                else:
                    content.append(text)
                text = ""
            else:
                content.append(text[:start])
                text = text[start + len(START_TAG):]
                state.in_reasoning = True

    return ParsedChunk(content="".join(content), reasoning="".join(reasoning))


class ReasoningParser:
    """Stateful wrapper around ``extract_reasoning`` for one stream."""

    def __init__(self):
        self.state = ReasoningParserState()

    def feed(self, chunk: str | None) -> ParsedChunk:
        return extract_reasoning(self.state, chunk)

    def flush(self) -> ParsedChunk:
        """Release a carried fragment that never became a tag."""
        carry, self.state.carry = self.state.carry, ""
        if self.state.in_reasoning:
            return ParsedChunk(reasoning=carry)
        return ParsedChunk(content=carry)

    def strip(self, text: str) -> str:
        """Answer text of a complete response with reasoning removed."""
        parsed = self.feed(text)
        return parsed.content + self.flush().content
