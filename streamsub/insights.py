"""Summary and relation-graph generation over a finished transcript."""

import logging
import re
from typing import Callable, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .completion_client import CompletionClient, render_prompt
from .models import CharacterInfo, CharacterRelation, EpisodeSummary, RelationGraph
from .exceptions import ResponseParseError

logger = logging.getLogger(__name__)

# --- Response schemas ---

class SummaryPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    key_points: List[str] = Field(alias="keyPoints")
    characters: List[str]
    events: List[str]
    summary: str

class CharacterPayload(BaseModel):
    name: str
    title: str = ""

class RelationPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    source: str = Field(alias="from")
    target: str = Field(alias="to")
    relation: str
    kind: str = Field(default="other", alias="type")

class RelationGraphPayload(BaseModel):
    characters: List[CharacterPayload]
    relations: List[RelationPayload] = Field(default_factory=list)

# --- Pattern extraction, used only when the schema does not match ---

_CHARACTER_PATTERN = re.compile(r'"name"\s*:\s*"([^"]+)"[^}]*"title"\s*:\s*"([^"]*)"')
_RELATION_PATTERN = re.compile(
    r'"from"\s*:\s*"([^"]+)"[^}]*"to"\s*:\s*"([^"]+)"[^}]*"relation"\s*:\s*"([^"]+)"'
)
_QUOTED = re.compile(r'"([^"]+)"')

def extract_json(text: str) -> str:
    """Strips Markdown fences and returns the span from the first '{' to the last '}'."""
    cleaned = text.replace("```json", "").replace("```", "").strip()
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start != -1 and end > start:
        return cleaned[start:end + 1]
    return cleaned

def extract_string_value(text: str, key: str) -> Optional[str]:
    """Value of the first ``"key": "..."`` pair, with \\n escapes expanded."""
    match = re.search(r'"' + re.escape(key) + r'"\s*:\s*"((?:[^"\\]|\\.)*)"', text)
    if match is None:
        return None
    return match.group(1).replace("\\n", "\n").replace('\\"', '"')

def extract_string_array(text: str, key: str) -> List[str]:
    """Quoted strings inside the first ``[...]`` following ``"key"``."""
    key_pos = text.find(f'"{key}"')
    if key_pos == -1:
        return []
    open_pos = text.find("[", key_pos)
    close_pos = text.find("]", open_pos)
    if open_pos == -1 or close_pos == -1:
        return []
    return _QUOTED.findall(text[open_pos:close_pos + 1])

def parse_summary(response: str) -> EpisodeSummary:
    """
    Parses a summary response.

    Raises:
        ResponseParseError: If neither the schema nor pattern extraction
                            finds a summary or key points.
    """
    json_text = extract_json(response)
    try:
        payload = SummaryPayload.model_validate_json(json_text)
        return EpisodeSummary(
            summary=payload.summary,
            key_points=payload.key_points,
            characters=payload.characters,
            events=payload.events
        )
    except ValidationError as e:
        logger.warning(f"Summary response does not match the schema, falling back to pattern extraction: {e.error_count()} errors")

    summary = extract_string_value(json_text, "summary") or ""
    key_points = extract_string_array(json_text, "keyPoints")
    if not summary and not key_points:
        raise ResponseParseError("Could not find a summary in the model response")
    return EpisodeSummary(
        summary=summary,
        key_points=key_points,
        characters=extract_string_array(json_text, "characters"),
        events=extract_string_array(json_text, "events")
    )

def parse_relations(response: str) -> RelationGraph:
    """
    Parses a relation-graph response.

    Raises:
        ResponseParseError: If no characters can be found.
    """
    json_text = extract_json(response)
    try:
        payload = RelationGraphPayload.model_validate_json(json_text)
        if payload.characters:
            return RelationGraph(
                characters=[CharacterInfo(name=c.name, title=c.title) for c in payload.characters],
                relations=[CharacterRelation(source=r.source, target=r.target, relation=r.relation, kind=r.kind)
                           for r in payload.relations]
            )
    except ValidationError as e:
        logger.warning(f"Relation response does not match the schema, falling back to pattern extraction: {e.error_count()} errors")

    characters: List[CharacterInfo] = []
    seen = set()
    for name, title in _CHARACTER_PATTERN.findall(json_text):
        if name not in seen:
            seen.add(name)
            characters.append(CharacterInfo(name=name, title=title))
    if not characters:
        raise ResponseParseError("Could not find any characters in the model response")
    relations = [CharacterRelation(source=source, target=target, relation=relation)
                 for source, target, relation in _RELATION_PATTERN.findall(json_text)]
    return RelationGraph(characters=characters, relations=relations)

class InsightGenerator:
    """Asks the completion endpoint for a summary or a relation graph of a transcript."""

    def __init__(
        self,
        client: CompletionClient,
        summary_prompt: str,
        relation_prompt: str,
        summary_max_chars: int = 10000,
        relation_max_chars: int = 8000,
        temperature: float = 0.3,
        max_tokens: int = 2000
    ):
        self.client = client
        self.summary_prompt = summary_prompt
        self.relation_prompt = relation_prompt
        self.summary_max_chars = summary_max_chars
        self.relation_max_chars = relation_max_chars
        self.temperature = temperature
        self.max_tokens = max_tokens

    def generate_summary(self, transcript: str, on_token: Optional[Callable[[str], None]] = None) -> EpisodeSummary:
        """
        Raises:
            CompletionError: If the request fails.
            ResponseParseError: If the answer holds no summary.
        """
        prompt = render_prompt(self.summary_prompt, transcript, max_chars=self.summary_max_chars)
        response = self.client.stream(prompt, temperature=self.temperature, max_tokens=self.max_tokens, on_token=on_token)
        return parse_summary(response)

    def extract_relations(self, transcript: str, on_token: Optional[Callable[[str], None]] = None) -> RelationGraph:
        """
        Raises:
            CompletionError: If the request fails.
            ResponseParseError: If the answer names no characters.
        """
        prompt = render_prompt(self.relation_prompt, transcript, max_chars=self.relation_max_chars)
        response = self.client.stream(prompt, temperature=self.temperature, max_tokens=self.max_tokens, on_token=on_token)
        return parse_relations(response)
