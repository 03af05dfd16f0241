# src/core/response_decoder.py
"""
Response decoder - turns raw model text into InterviewReply / AnalysisResult.

Model output is nominally JSON but regularly arrives wrapped in code fences,
with stray control characters, or cut off by the output-length cap. The text
goes through a fixed sequence of repairs before parsing; each step leaves
already-valid input untouched:

1. Trim whitespace and strip a surrounding ```lang fence.
2. Drop control characters except newline, carriage return and tab.
3. Start at the first bracket; text in front of it is skipped.
4. Close what truncation left open: an unterminated string literal, a
   dangling object key or trailing comma, then the open brackets and braces
   in reverse nesting order.
5. Parse and map the value to the canonical record. Each known provider
   quirk is one shape variant. When the value fails to parse or has an
   unknown shape, steps 3-5 are retried from the next bracket; when no
   bracket works the caller's default record is used.

Truncation inside a bare literal (``fal`` for ``false``, ``nul``) is not
recovered: the repaired text still fails to parse and the default is used.

Decoding never raises.
"""
import json
import logging
import re
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from src.core.prompt_manager import PromptType, get_prompt_manager
from src.models.flow_models import (
    AnalysisResult,
    Diagnosis,
    InterviewReply,
    SymptomLink,
    Urgency,
)

logger = logging.getLogger(__name__)

_FENCE_OPEN = re.compile(r'^```[\w+-]*[ \t]*\r?\n?')
_FENCE_CLOSE = re.compile(r'\r?\n?[ \t]*```$')
_CONTROL_CHARS = re.compile(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]')
# A quoted key at the end of an object, with or without its colon
_DANGLING_KEY = re.compile(r'(?<=[{,])\s*"(?:[^"\\]|\\.)*"\s*:?\s*$')
_NUMBER = re.compile(r'-?\d+(?:\.\d+)?')

_CLOSERS = {'{': '}', '[': ']'}

_QUESTION_TEXT_KEYS = ("question", "text", "content", "message")
_OPTION_TEXT_KEYS = ("text", "value", "label", "option", "content")
_QUESTION_LIST_KEYS = ("questions",)
_DIALOGUE_KEYS = ("dialogue", "dialog", "messages", "conversation")
_ASSISTANT_ROLES = ("assistant", "model", "nurse", "ai", "bot")
_LINK_KEYS = ("symptomConnections", "symptom_connections", "symptomLinks", "symptom_links", "connections")
_WRAPPER_KEYS = ("analysis", "result", "data")

_PREVIEW = 200
# Bracket positions tried as payload starts when text precedes the JSON
_MAX_PAYLOAD_STARTS = 16


class ReplyShape(str, Enum):
    """Known shapes of an interview reply"""
    CANONICAL = "canonical"              # {"question": "...", "options": [...], ...}
    SINGLE_QUESTION = "single_question"  # question text nested or under another key
    QUESTION_ARRAY = "question_array"    # several question objects at once
    DIALOGUE_ARRAY = "dialogue_array"    # role-tagged message list
    UNKNOWN = "unknown"


class AnalysisShape(str, Enum):
    """Known shapes of an analysis result"""
    CANONICAL = "canonical"              # {"diagnoses": [...], "symptomConnections": [...]}
    WRAPPED = "wrapped"                  # {"analysis": {"diagnoses": ...}}
    DIAGNOSIS_ARRAY = "diagnosis_array"  # bare list of diagnosis objects
    UNKNOWN = "unknown"


# ===========================================
# TEXT REPAIR
# ===========================================

def strip_code_fence(text: str) -> str:
    """Trim whitespace and remove a leading/trailing ``` fence with optional language tag"""
    text = text.strip()
    if text.startswith("```"):
        text = _FENCE_OPEN.sub("", text, count=1)
    if text.endswith("```"):
        text = _FENCE_CLOSE.sub("", text, count=1)
    return text.strip()


def remove_control_characters(text: str) -> str:
    """Drop non-printable control characters, keeping \\n, \\r and \\t"""
    return _CONTROL_CHARS.sub("", text)


def _payload_starts(text: str) -> List[int]:
    """Offsets of the '{' / '[' characters a payload may start at, in order"""
    starts = [i for i, ch in enumerate(text) if ch in _CLOSERS]
    return starts[:_MAX_PAYLOAD_STARTS] or [0]


def _scan(text: str) -> Tuple[List[str], bool, bool]:
    """
    Walk the text once, tracking string literals and bracket nesting.

    Returns the stack of still-open brackets, whether the text ends inside a
    string literal, and whether that literal ends on a lone backslash.
    Scanning stops once the first top-level value is complete.
    """
    stack: List[str] = []
    in_string = False
    escaped = False

    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == '\\':
                escaped = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"':
            in_string = True
        elif ch in _CLOSERS:
            stack.append(ch)
        elif ch in ('}', ']'):
            if stack and _CLOSERS[stack[-1]] == ch:
                stack.pop()
                if not stack:
                    break
            # Mismatched closers are left for the parser to reject

    return stack, in_string, escaped


def repair_truncated_json(text: str) -> Tuple[str, List[str]]:
    """
    Close a JSON document that was cut off mid-way.

    Args:
        text: Fence-stripped, control-character-free text

    Returns:
        Tuple of (repaired text, list of repair actions taken)
    """
    stack, in_string, escaped = _scan(text)
    if not stack and not in_string:
        return text, []

    actions: List[str] = []
    repaired = text

    if in_string:
        if escaped:
            repaired = repaired[:-1]
        repaired += '"'
        actions.append("closed unterminated string")

    repaired = repaired.rstrip()

    if stack and stack[-1] == '{':
        trimmed = _DANGLING_KEY.sub("", repaired)
        if trimmed != repaired:
            repaired = trimmed.rstrip()
            actions.append("dropped dangling key")

    if repaired.endswith(','):
        repaired = repaired[:-1].rstrip()
        actions.append("dropped trailing comma")

    if stack:
        closers = ''.join(_CLOSERS[opener] for opener in reversed(stack))
        repaired += closers
        actions.append(f"appended {closers}")

    return repaired, actions


def clean_text(raw_text: str) -> str:
    """Strip the code fence and control characters"""
    logger.debug(f"Raw model text: {raw_text[:_PREVIEW]!r}")

    text = strip_code_fence(raw_text)
    if len(text) != len(raw_text):
        logger.debug("Stripped surrounding whitespace/code fence")

    cleaned = remove_control_characters(text)
    if len(cleaned) != len(text):
        logger.info(f"Removed {len(text) - len(cleaned)} control characters")
    return cleaned


def _repaired_from(text: str, start: int) -> str:
    repaired, actions = repair_truncated_json(text[start:])
    if actions:
        logger.info(f"Repaired truncated JSON: {', '.join(actions)}")
    logger.debug(f"Cleaned model text: {repaired[:_PREVIEW]!r}")
    return repaired


def parse_json(text: str) -> Any:
    """
    Parse the first JSON value in the text.

    Literal newlines and tabs inside strings are accepted; trailing text after
    the value is ignored.

    Raises:
        ValueError: If no JSON value can be parsed
    """
    value, end = json.JSONDecoder(strict=False).raw_decode(text)
    if text[end:].strip():
        logger.info(f"Ignored {len(text) - end} characters after the JSON payload")
    return value


def _first_recognised(raw_text: str, classify, unknown) -> Tuple[Any, Optional[Dict[str, Any]], bool]:
    """
    Parse from each candidate bracket in turn and classify the value.

    Text in front of the payload may itself hold brackets ("Note [1]: {...}"),
    so a candidate that fails to parse or has an unknown shape moves the search
    on to the next bracket.

    Returns:
        Tuple of (shape, object to normalize, whether any candidate parsed);
        the shape is ``unknown`` when no candidate was recognised
    """
    text = clean_text(raw_text)
    parsed_any = False
    last_payload: Any = None

    for start in _payload_starts(text):
        try:
            payload = parse_json(_repaired_from(text, start))
        except ValueError as e:
            logger.debug(f"No JSON value at offset {start}: {e}")
            continue

        parsed_any = True
        shape, obj = classify(payload)
        if shape is not unknown:
            if start > 0:
                logger.info(f"Skipped {start} characters of text before the JSON payload")
            return shape, obj, True
        last_payload = payload

    if parsed_any:
        logger.warning(f"Unrecognized reply shape: {str(last_payload)[:_PREVIEW]}")
    return unknown, None, parsed_any


# ===========================================
# FIELD COERCION
# ===========================================

def _first_text(obj: Dict[str, Any], keys) -> str:
    for key in keys:
        value = obj.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
    return ""


def _coerce_int(value: Any, low: int, high: int, default: int) -> int:
    """Read an integer from a number or a string like '85%', clamped to [low, high]"""
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        number = value
    elif isinstance(value, str):
        match = _NUMBER.search(value)
        if not match:
            return default
        number = float(match.group())
    else:
        return default
    return max(low, min(high, int(round(number))))


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1")
    return False


def _coerce_urgency(value: Any) -> Urgency:
    if isinstance(value, str):
        for urgency in Urgency:
            if value.strip().lower() == urgency.value.lower():
                return urgency
    logger.warning(f"Unknown urgency {value!r}, using {Urgency.MEDIUM.value}")
    return Urgency.MEDIUM


def _normalize_options(raw_options: Any) -> List[str]:
    """Options as non-empty strings in model order; object entries give up a text/value field"""
    if not isinstance(raw_options, list):
        if raw_options:
            logger.warning(f"Ignoring options of type {type(raw_options).__name__}")
        return []

    options: List[str] = []
    for entry in raw_options:
        if isinstance(entry, dict):
            text = _first_text(entry, _OPTION_TEXT_KEYS)
            if not text:
                logger.warning(f"Option object without text field: {entry}")
        elif isinstance(entry, (str, int, float)) and not isinstance(entry, bool):
            text = str(entry).strip()
        else:
            text = ""
        if text:
            options.append(text)

    if raw_options and isinstance(raw_options[0], dict):
        logger.info("Extracted option text from option objects")
    return options


def _allow_multiple(obj: Dict[str, Any]) -> bool:
    for key in ("allowMultiple", "allow_multiple"):
        if key in obj:
            if _coerce_bool(obj[key]):
                return True
            break
    question_type = obj.get("question_type") or obj.get("questionType")
    return isinstance(question_type, str) and question_type.lower() == "multiple_choice"


# ===========================================
# INTERVIEW REPLIES
# ===========================================

def _is_question_object(value: Any) -> bool:
    return isinstance(value, dict) and bool(_first_text(value, _QUESTION_TEXT_KEYS))


def _last_assistant_entry(entries: List[Any]) -> Optional[Dict[str, Any]]:
    candidates = [e for e in entries if isinstance(e, dict)]
    for entry in reversed(candidates):
        role = str(entry.get("role", entry.get("speaker", ""))).lower()
        if role in _ASSISTANT_ROLES:
            return entry
    return candidates[-1] if candidates else None


def classify_interview(payload: Any) -> Tuple[ReplyShape, Optional[Dict[str, Any]]]:
    """
    Identify the shape of a parsed interview reply.

    Returns:
        Tuple of (shape, the single question object to normalize)
    """
    if isinstance(payload, str) and payload.strip():
        return ReplyShape.SINGLE_QUESTION, {"question": payload}

    if isinstance(payload, dict):
        question = payload.get("question")
        if isinstance(question, str) and question.strip():
            return ReplyShape.CANONICAL, payload

        if isinstance(question, dict):
            # Outer flags apply unless the nested object sets its own
            return ReplyShape.SINGLE_QUESTION, {**payload, **question, "question": _first_text(question, _QUESTION_TEXT_KEYS)}

        for key in _QUESTION_LIST_KEYS:
            questions = payload.get(key)
            if isinstance(questions, list) and questions and _is_question_object(questions[0]):
                return ReplyShape.QUESTION_ARRAY, questions[0]

        for key in _DIALOGUE_KEYS:
            entries = payload.get(key)
            if isinstance(entries, list) and entries:
                entry = _last_assistant_entry(entries)
                if _is_question_object(entry):
                    return ReplyShape.DIALOGUE_ARRAY, entry

        if _is_question_object(payload):
            return ReplyShape.SINGLE_QUESTION, payload

    if isinstance(payload, list) and payload:
        if all(isinstance(e, dict) and ("role" in e or "speaker" in e) for e in payload):
            entry = _last_assistant_entry(payload)
            if _is_question_object(entry):
                return ReplyShape.DIALOGUE_ARRAY, entry
        if _is_question_object(payload[0]):
            return ReplyShape.QUESTION_ARRAY, payload[0]

    return ReplyShape.UNKNOWN, None


def _reply_from_object(obj: Dict[str, Any]) -> Optional[InterviewReply]:
    question = _first_text(obj, _QUESTION_TEXT_KEYS)
    if not question:
        return None
    options = _normalize_options(obj.get("options", obj.get("choices", [])))
    return InterviewReply(question=question, options=options, allow_multiple=_allow_multiple(obj))


def default_interview_reply() -> InterviewReply:
    """Generic prompt with no options"""
    return InterviewReply(
        question=get_prompt_manager().get(PromptType.INTERVIEW_FALLBACK),
        options=[],
        allow_multiple=False
    )


def decode_interview(raw_text: Optional[str], default: Optional[InterviewReply] = None) -> InterviewReply:
    """
    Decode an interview reply from raw model text.

    Args:
        raw_text: Text returned by the model
        default: Record returned when decoding fails (generic prompt if omitted)

    Returns:
        The decoded InterviewReply, never None
    """
    fallback = default if default is not None else default_interview_reply()

    if not raw_text or not raw_text.strip():
        logger.warning("Empty interview reply, using fallback")
        return fallback

    shape, question_obj, parsed = _first_recognised(raw_text, classify_interview, ReplyShape.UNKNOWN)
    if shape is ReplyShape.UNKNOWN:
        if parsed:
            logger.warning("Unrecognized interview reply shape, using fallback")
        else:
            logger.warning(f"Could not parse interview reply, using fallback. Raw: {raw_text[:_PREVIEW]!r}")
        return fallback
    if shape is not ReplyShape.CANONICAL:
        logger.warning(f"Interview reply anomaly: {shape.value}, normalizing to a single question")

    try:
        reply = _reply_from_object(question_obj)
    except (TypeError, ValueError) as e:
        logger.warning(f"Could not normalize interview reply ({e}), using fallback")
        return fallback

    if reply is None:
        logger.warning("Interview reply without question text, using fallback")
        return fallback
    return reply


# ===========================================
# ANALYSIS RESULTS
# ===========================================

def classify_analysis(payload: Any) -> Tuple[AnalysisShape, Optional[Dict[str, Any]]]:
    """
    Identify the shape of a parsed analysis result.

    Returns:
        Tuple of (shape, an object holding "diagnoses" and optional link keys)
    """
    if isinstance(payload, dict):
        if isinstance(payload.get("diagnoses"), list):
            return AnalysisShape.CANONICAL, payload
        for key in _WRAPPER_KEYS:
            inner = payload.get(key)
            if isinstance(inner, dict) and isinstance(inner.get("diagnoses"), list):
                return AnalysisShape.WRAPPED, inner

    if isinstance(payload, list) and payload and all(isinstance(e, dict) and "name" in e for e in payload):
        return AnalysisShape.DIAGNOSIS_ARRAY, {"diagnoses": payload}

    return AnalysisShape.UNKNOWN, None


def _diagnosis_from(obj: Any) -> Optional[Diagnosis]:
    if not isinstance(obj, dict):
        return None
    name = _first_text(obj, ("name", "condition", "diagnosis"))
    if not name:
        return None

    raw_probability = obj.get("probability", obj.get("likelihood"))
    if isinstance(raw_probability, float) and 0 < raw_probability < 1:
        raw_probability *= 100

    return Diagnosis(
        name=name,
        probability=_coerce_int(raw_probability, 0, 100, default=0),
        description=_first_text(obj, ("description", "reason")),
        urgency=_coerce_urgency(obj.get("urgency")),
        recommended_action=_first_text(obj, ("recommendedAction", "recommended_action", "action")),
    )


def _link_from(obj: Any) -> Optional[SymptomLink]:
    if not isinstance(obj, dict):
        return None
    symptom = _first_text(obj, ("symptom", "source"))
    condition = _first_text(obj, ("condition", "target"))
    if not symptom or not condition:
        return None
    return SymptomLink(
        symptom=symptom,
        condition=condition,
        strength=_coerce_int(obj.get("strength", obj.get("value")), 1, 10, default=1),
    )


def _analysis_from_object(obj: Dict[str, Any]) -> AnalysisResult:
    diagnoses = [d for d in (_diagnosis_from(item) for item in obj.get("diagnoses", [])) if d]

    raw_links: List[Any] = []
    for key in _LINK_KEYS:
        if isinstance(obj.get(key), list):
            raw_links = obj[key]
            break
    links = [link for link in (_link_from(item) for item in raw_links) if link]

    dropped = len(obj.get("diagnoses", [])) - len(diagnoses) + len(raw_links) - len(links)
    if dropped:
        logger.warning(f"Dropped {dropped} malformed diagnosis/link entries")

    return AnalysisResult(diagnoses=diagnoses, symptom_links=links)


def decode_analysis(raw_text: Optional[str], default: Optional[AnalysisResult] = None) -> AnalysisResult:
    """
    Decode an analysis result from raw model text.

    Args:
        raw_text: Text returned by the model
        default: Record returned when decoding fails ('insufficient data' if omitted)

    Returns:
        The decoded AnalysisResult, never None
    """
    fallback = default if default is not None else AnalysisResult.placeholder()

    if not raw_text or not raw_text.strip():
        logger.warning("Empty analysis reply, using placeholder")
        return fallback

    shape, analysis_obj, parsed = _first_recognised(raw_text, classify_analysis, AnalysisShape.UNKNOWN)
    if shape is AnalysisShape.UNKNOWN:
        if parsed:
            logger.warning("Unrecognized analysis shape, using placeholder")
        else:
            logger.warning(f"Could not parse analysis reply, using placeholder. Raw: {raw_text[:_PREVIEW]!r}")
        return fallback
    if shape is not AnalysisShape.CANONICAL:
        logger.warning(f"Analysis reply anomaly: {shape.value}, normalizing")

    try:
        result = _analysis_from_object(analysis_obj)
    except (TypeError, ValueError) as e:
        logger.warning(f"Could not normalize analysis reply ({e}), using placeholder")
        return fallback

    if not result.diagnoses and (shape is not AnalysisShape.CANONICAL or analysis_obj["diagnoses"]):
        # Entries were present but none was usable
        logger.warning("Analysis reply without usable diagnoses, using placeholder")
        return fallback
    if not result.diagnoses:
        logger.info("Model returned an empty differential")
    return result
