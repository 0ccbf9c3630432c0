# battlesync/extractors.py
"""
Pure parsers for Buckler pages.

Battle log pages are parsed by an ordered chain of extractors: the embedded
``replay_list`` JSON first, the rendered markup second. The first extractor
that yields records wins; an empty result from every extractor is treated by
callers as the end of the history.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from bs4 import BeautifulSoup

from battlesync.models import (
    CharacterLeague,
    MatchRecord,
    PlayerProfile,
    PlayerSide,
    UNKNOWN_REPLAY_ID,
)

LOGGER = logging.getLogger(__name__)

PROFILE_LINK_RE = re.compile(r"""href=["']/6/buckler/profile/(\d+)["']""")
PROFILE_HREF_RE = re.compile(r"/6/buckler/profile/(\d+)$")
REPLAY_ID_RE = re.compile(r"^[A-Z0-9]+$")
REPLAY_LIST_PATTERNS = (
    re.compile(r"replay_list\s*=\s*"),
    re.compile(r'"replay_list":\s*'),
)


def _dig(data: Any, *keys: str) -> Any:
    node = data
    for key in keys:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node


def _safe_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def extract_next_data(html: str) -> Optional[Dict[str, Any]]:
    """Return the parsed ``__NEXT_DATA__`` payload of a page, or None."""
    if not html:
        return None
    soup = BeautifulSoup(html, "html.parser")
    script = soup.find("script", id="__NEXT_DATA__")
    if script is None or not script.string:
        return None
    try:
        data = json.loads(script.string)
    except json.JSONDecodeError:
        LOGGER.debug("__NEXT_DATA__ present but not valid JSON")
        return None
    return data if isinstance(data, dict) else None


def page_props(next_data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    props = _dig(next_data, "props", "pageProps")
    return props if isinstance(props, dict) else {}


def extract_json_array(text: str, start_pattern: re.Pattern) -> Optional[str]:
    """
    Cut the JSON array that follows ``start_pattern`` out of ``text``.

    Brackets inside string literals (and escaped quotes) are ignored.
    """
    match = start_pattern.search(text)
    if match is None:
        return None
    open_index = text.find("[", match.start())
    if open_index == -1:
        return None

    depth = 0
    in_string = False
    escaped = False
    for i in range(open_index, len(text)):
        char = text[i]
        if escaped:
            escaped = False
            continue
        if char == "\\":
            escaped = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == "[":
            depth += 1
        elif char == "]":
            depth -= 1
            if depth == 0:
                return text[open_index:i + 1]
    return None


def format_control_type(type_name: Optional[str]) -> str:
    if not type_name:
        return "Unknown"
    lowered = type_name.lower()
    if "classic" in lowered or "クラシック" in type_name:
        return "Classic"
    if "modern" in lowered or "モダン" in type_name:
        return "Modern"
    return type_name


def winner_from_scores(p1_score: int, p2_score: int) -> int:
    if p1_score > p2_score:
        return 1
    if p1_score < p2_score:
        return 2
    return 0


class RecordExtractor:
    """Turns one raw page into match records; an empty list means 'no match'."""

    name = "base"

    def extract(self, text: str) -> List[MatchRecord]:
        raise NotImplementedError


class ReplayListExtractor(RecordExtractor):
    """Reads the structured ``replay_list`` array embedded in the page."""

    name = "replay_list"

    def extract(self, text: str) -> List[MatchRecord]:
        if not text:
            return []
        raw = None
        for pattern in REPLAY_LIST_PATTERNS:
            raw = extract_json_array(text, pattern)
            if raw:
                break
        if not raw:
            return []
        try:
            replay_list = json.loads(raw)
        except json.JSONDecodeError:
            LOGGER.debug("replay_list found but could not be decoded")
            return []
        if not isinstance(replay_list, list):
            return []

        records: List[MatchRecord] = []
        for entry in replay_list:
            try:
                records.append(self._parse_entry(entry))
            except (KeyError, TypeError, ValueError, AttributeError) as exc:
                LOGGER.debug("Skipping malformed replay entry: %s", exc)
        return records

    @staticmethod
    def _side(info: Dict[str, Any]) -> PlayerSide:
        player = info["player"]
        return PlayerSide(
            name=str(player.get("fighter_id") or "Unknown"),
            id=str(player["short_id"]),
            character=str(info.get("playing_character_name") or "Unknown"),
            input_type=format_control_type(info.get("battle_input_type_name")),
            rating=_safe_int(info.get("master_rating")) or _safe_int(info.get("league_point")),
        )

    @staticmethod
    def _score(info: Dict[str, Any]) -> int:
        rounds = info.get("round_results")
        if not isinstance(rounds, list):
            return 0
        return sum(1 for r in rounds if isinstance(r, (int, float)) and r > 0)

    def _parse_entry(self, entry: Dict[str, Any]) -> MatchRecord:
        p1_info = entry["player1_info"]
        p2_info = entry["player2_info"]
        p1_score = self._score(p1_info)
        p2_score = self._score(p2_info)

        uploaded_at = _safe_int(entry.get("uploaded_at"))
        timestamp = uploaded_at * 1000 if uploaded_at is not None else None
        display_date = ""
        if uploaded_at is not None:
            display_date = datetime.fromtimestamp(uploaded_at, tz=timezone.utc).isoformat()

        return MatchRecord(
            player1=self._side(p1_info),
            player2=self._side(p2_info),
            player1_score=p1_score,
            player2_score=p2_score,
            replay_id=str(entry.get("replay_id") or UNKNOWN_REPLAY_ID),
            timestamp=timestamp,
            display_date=display_date,
            winner=winner_from_scores(p1_score, p2_score),
        )


class HtmlBattleLogExtractor(RecordExtractor):
    """Fallback over the rendered battle log list items."""

    name = "html"

    RESULT_CLASSES = (
        ("battle_data_win__", 1),
        ("battle_data_lose__", 2),
        ("battle_data_draw__", 0),
    )

    @staticmethod
    def _by_class(node, prefix: str):
        pattern = re.compile("^" + re.escape(prefix))
        if node is None:
            return None
        if any(pattern.match(c) for c in (node.get("class") or [])):
            return node
        return node.find(class_=pattern)

    @staticmethod
    def _short_id(block) -> str:
        if block is None:
            return "Unknown"
        for link in block.find_all("a", href=True):
            match = PROFILE_HREF_RE.search(link["href"])
            if match:
                return match.group(1)
        return "Unknown"

    @staticmethod
    def _character(block) -> tuple[str, str]:
        if block is None:
            return "Unknown", "Unknown"
        img = block.find("img", alt=True)
        character = img["alt"] if img is not None else "Unknown"
        markup = str(block)
        if "icon_c.png" in markup or "type_classic" in markup:
            control = "Classic"
        elif "icon_m.png" in markup or "type_modern" in markup:
            control = "Modern"
        else:
            control = "Unknown"
        return character, control

    def _name(self, item, side_prefix: str) -> str:
        holder = self._by_class(item, side_prefix)
        if holder is None:
            return "Unknown"
        inner = self._by_class(holder, "battle_data_name__") or holder
        text = inner.get_text(strip=True)
        return text or "Unknown"

    def _winner(self, item) -> Optional[int]:
        for prefix, winner in self.RESULT_CLASSES:
            if self._by_class(item, prefix) is not None:
                return winner
        return None

    def extract(self, text: str) -> List[MatchRecord]:
        if not text or "battle_data_inner_log__" not in text:
            return []
        soup = BeautifulSoup(text, "html.parser")
        records: List[MatchRecord] = []

        for item in soup.find_all("li", attrs={"data-index": True}):
            if self._by_class(item, "battle_data_inner_log__") is None:
                continue
            date_node = self._by_class(item, "battle_data_date__")
            if date_node is None:
                continue

            p1_block = self._by_class(item, "battle_data_player1__")
            p2_block = self._by_class(item, "battle_data_player2__")
            p1_character, p1_type = self._character(p1_block)
            p2_character, p2_type = self._character(p2_block)

            replay_id = UNKNOWN_REPLAY_ID
            clip = item.find(attrs={"data-clipboard-text": True})
            if clip is not None and REPLAY_ID_RE.match(clip["data-clipboard-text"]):
                replay_id = clip["data-clipboard-text"]

            records.append(
                MatchRecord(
                    player1=PlayerSide(
                        name=self._name(item, "battle_data_name_p1__"),
                        id=self._short_id(p1_block),
                        character=p1_character,
                        input_type=p1_type,
                    ),
                    player2=PlayerSide(
                        name=self._name(item, "battle_data_name_p2__"),
                        id=self._short_id(p2_block),
                        character=p2_character,
                        input_type=p2_type,
                    ),
                    replay_id=replay_id,
                    display_date=date_node.get_text(strip=True),
                    winner=self._winner(item),
                )
            )
        return records


DEFAULT_EXTRACTORS: Sequence[RecordExtractor] = (ReplayListExtractor(), HtmlBattleLogExtractor())


def extract_records(text: str, chain: Sequence[RecordExtractor] = DEFAULT_EXTRACTORS) -> List[MatchRecord]:
    for extractor in chain:
        records = extractor.extract(text)
        if records:
            LOGGER.debug("Extractor '%s' matched %d records", extractor.name, len(records))
            return records
    return []


# --- Play / profile pages ---

def parse_league_infos(container: Any) -> List[CharacterLeague]:
    """Read ``character_league_infos`` from a play payload or a season API response."""
    infos = _dig(container, "character_league_infos")
    if not isinstance(infos, list):
        infos = _dig(container, "response", "character_league_infos")
    if not isinstance(infos, list):
        return []

    out: List[CharacterLeague] = []
    for info in infos:
        if not isinstance(info, dict):
            continue
        league = info.get("league_info") or {}
        character_id = str(info.get("character_id") or info.get("character_tool_name") or "")
        out.append(
            CharacterLeague(
                character_id=character_id,
                character_name=str(info.get("character_name") or character_id or "Unknown"),
                league_point=_safe_int(league.get("league_point")),
                master_rating=_safe_int(league.get("master_rating")),
                league_rank=_safe_int(league.get("league_rank")),
                master_rating_ranking=_safe_int(league.get("master_rating_ranking")),
                battle_count=_safe_int(info.get("battle_count")) or 0,
                is_played=bool(info.get("is_played", True)),
            )
        )
    return out


def parse_profile(next_data: Optional[Dict[str, Any]], fallback_id: str = "") -> Optional[PlayerProfile]:
    banner = page_props(next_data).get("fighter_banner_info")
    if not isinstance(banner, dict):
        return None
    personal = banner.get("personal_info") or {}
    short_id = personal.get("short_id") or fallback_id
    if not short_id:
        return None
    return PlayerProfile(
        short_id=str(short_id),
        fighter_name=str(personal.get("fighter_id") or "Unknown"),
        favorite_character=str(banner.get("favorite_character_tool_name") or ""),
        favorite_character_name=str(banner.get("favorite_character_name") or "Unknown"),
    )


def _pct(value: Any) -> Optional[str]:
    if value is None:
        return None
    try:
        return f"{float(value) * 100:.1f}%"
    except (TypeError, ValueError):
        return None


def _seconds(value: Any) -> Optional[str]:
    return None if value is None else f"{value}s"


def _rate_sum(*values: Any) -> Optional[float]:
    present = [v for v in values if v is not None]
    return sum(present) if present else None


def parse_battle_stats(next_data: Optional[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    """Battle tendency counters and gauge usage from the play page."""
    stats: Dict[str, List[Dict[str, Any]]] = {"battle_trends": [], "drive_gauge": [], "sa_gauge": []}
    bs = _dig(page_props(next_data), "play", "battle_stats")
    if not isinstance(bs, dict):
        return stats

    stats["battle_trends"] = [
        {"label": "Throws", "value": bs.get("throw_count")},
        {"label": "Thrown", "value": bs.get("received_throw_count")},
        {"label": "Throw techs", "value": bs.get("throw_tech")},
        {"label": "Stuns", "value": bs.get("stun")},
        {"label": "Stunned", "value": bs.get("received_stun")},
        {"label": "Drive Impacts", "value": bs.get("drive_impact")},
        {"label": "Drive Impacts received", "value": bs.get("received_drive_impact")},
        {"label": "Punish Counters", "value": bs.get("punish_counter")},
        {"label": "Punish Counters received", "value": bs.get("received_punish_counter")},
        {"label": "Perfect Parries", "value": bs.get("just_parry")},
        {"label": "Corner time", "value": _seconds(bs.get("corner_time"))},
        {"label": "Cornered time", "value": _seconds(bs.get("cornered_time"))},
    ]

    rush = _rate_sum(bs.get("gauge_rate_drive_rush_from_cancel"), bs.get("gauge_rate_drive_rush_from_parry"))

    stats["drive_gauge"] = [
        {"label": "Drive Parry", "value": _pct(bs.get("gauge_rate_drive_guard"))},
        {"label": "Drive Cancel", "value": _pct(bs.get("gauge_rate_drive_arts"))},
        {"label": "Drive Impact", "value": _pct(bs.get("gauge_rate_drive_impact"))},
        {"label": "Drive Reversal", "value": _pct(bs.get("gauge_rate_drive_reversal"))},
        {"label": "Overdrive", "value": _pct(bs.get("gauge_rate_drive_other"))},
        {"label": "Drive Rush", "value": _pct(rush)},
    ]
    stats["sa_gauge"] = [
        {"label": "SA Lv1", "value": _pct(bs.get("gauge_rate_sa_lv1"))},
        {"label": "SA Lv2", "value": _pct(bs.get("gauge_rate_sa_lv2"))},
        {"label": "SA Lv3 / CA", "value": _pct(_rate_sum(bs.get("gauge_rate_sa_lv3"), bs.get("gauge_rate_ca")))},
    ]
    return stats


def find_profile_link_id(html: str) -> Optional[str]:
    match = PROFILE_LINK_RE.search(html or "")
    return match.group(1) if match else None
