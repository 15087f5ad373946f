# rewrite_pipeline/processors/context_pack.py
"""
Preference normalization and context-pack assembly.

Published preference payloads arrive in one of two shapes:
  flat:      {"communication_directness": "gentle", ...}
  resolved:  {"resolved": {"communication_directness": {"value_key": "gentle"}, ...}}

normalize_preference_payload() flattens both into {preference_id: value_key}.
build_context_pack() selects the preferences relevant to the classified topics
and attaches a delivery instruction to each one.
"""

from typing import Any, Dict, List, Optional

CONTEXT_VERSION = "v1"

COMMUNICATION_CORE = (
    "communication_directness",
    "communication_channel",
    "conflict_resolution_style",
)

TOPIC_PREFERENCES: Dict[str, List[str]] = {
    "noise": [
        "environment_noise_tolerance",
        "schedule_quiet_hours_preference",
        "conflict_resolution_style",
        "communication_directness",
    ],
    "privacy": [
        "privacy_room_entry",
        "privacy_notifications",
        "communication_channel",
        "conflict_resolution_style",
    ],
}

POWER_MODES = ("peer", "higher_sender", "higher_recipient")

# (preference_id, value_key) -> instruction; (preference_id, None) is the per-preference default
INSTRUCTIONS: Dict[tuple, str] = {
    ("communication_directness", "gentle"): "Prefer softer phrasing and good timing; avoid blunt wording.",
    ("communication_directness", "balanced"): "Be clear but not harsh; avoid sharp tone.",
    ("communication_directness", "direct"): "Be straightforward without commands; keep concise.",
    ("communication_directness", None): "Keep clear and respectful tone.",
    ("conflict_resolution_style", "cool_off"): "Offer space first; avoid demanding immediate response.",
    ("conflict_resolution_style", "talk_soon"): "Invite a short chat when convenient; avoid urgency.",
    ("conflict_resolution_style", "mediate"): "Suggest a gentle check-in later; no third-party mediation implied.",
    ("conflict_resolution_style", "check_in"): "Suggest a gentle check-in later; no third-party mediation implied.",
    ("conflict_resolution_style", None): "Suggest a calm follow-up.",
    ("environment_noise_tolerance", "low"): "Frame as a quiet-time request using impact language; avoid blame.",
    ("environment_noise_tolerance", "medium"): "Ask for mindful hours; keep tone neutral.",
    ("environment_noise_tolerance", "high"): "Keep request minimal; avoid overstating impact.",
    ("environment_noise_tolerance", None): "Ask for considerate noise levels.",
    ("schedule_quiet_hours_preference", "early_evening"): "Avoid late-night asks; suggest daytime without exact times.",
    ("schedule_quiet_hours_preference", "late_evening_or_night"): "Allow later timing; avoid exact times unless provided.",
    ("schedule_quiet_hours_preference", "none"): "No added timing constraints.",
    ("schedule_quiet_hours_preference", None): "Keep timing reasonable.",
    ("privacy_room_entry", "always_ask"): "Ask permission before entering; phrase as a request, not a rule.",
    ("privacy_room_entry", None): "Ask before entering shared/private spaces.",
    ("privacy_notifications", "none"): "Avoid after-hours notifications; suggest tomorrow without inventing times.",
    ("privacy_notifications", None): "Be mindful of notification timing.",
    ("communication_channel", "text"): "Written request is fine; keep concise and calm.",
    ("communication_channel", "call"): "Offer a quick call when convenient; avoid urgency.",
    ("communication_channel", "in_person"): "Offer a brief in-person check-in; avoid pressure.",
    ("communication_channel", None): "Use a considerate communication channel.",
    ("cleanliness_shared_space_tolerance", "low"): 'Use reset/tidy-up framing; avoid "messy" accusations.',
    ("cleanliness_shared_space_tolerance", "high"): "Keep request minimal; avoid policing tone.",
    ("cleanliness_shared_space_tolerance", None): "Ask for shared-space reset.",
    ("social_togetherness", "mostly_solo"): "Avoid pushing group talk; keep 1:1 framing.",
    ("social_togetherness", "balanced"): "Neutral social framing.",
    ("social_togetherness", "mostly_together"): "Allow gentle invitation; avoid pressure.",
    ("social_togetherness", None): "Keep social tone balanced.",
    ("social_hosting_frequency", "rare"): "Emphasize heads-up and consent for visitors.",
    ("social_hosting_frequency", "sometimes"): "Use gentle heads-up language for visitors.",
    ("social_hosting_frequency", "often"): "Avoid judgment; keep request specific and time-bounded.",
    ("social_hosting_frequency", None): "Ask for visitor heads-up.",
    ("routine_planning_style", "planner"): "Provide heads-up and propose planning; avoid last-minute tone.",
    ("routine_planning_style", "mixed"): "No change to timing tone.",
    ("routine_planning_style", "spontaneous"): "Keep request lightweight; avoid heavy planning language.",
    ("routine_planning_style", None): "Keep timing language light.",
}
DEFAULT_INSTRUCTION = "Keep tone warm and clear."


def map_instruction(preference_id: str, value_key: str) -> str:
    hit = INSTRUCTIONS.get((preference_id, value_key))
    if hit is not None:
        return hit
    return INSTRUCTIONS.get((preference_id, None), DEFAULT_INSTRUCTION)


def normalize_preference_payload(published: Any) -> Dict[str, str]:
    if not isinstance(published, dict) or not published:
        return {}
    if all(isinstance(v, str) for v in published.values()):
        return dict(published)

    resolved = published.get("resolved")
    if not isinstance(resolved, dict):
        return {}
    out: Dict[str, str] = {}
    for pref_id, v in resolved.items():
        if isinstance(v, dict):
            value_key = v.get("value_key")
            if isinstance(value_key, str) and value_key:
                out[pref_id] = value_key
    return out


def build_snapshot_preferences(normalized: Dict[str, str]) -> Dict[str, str]:
    # communication prefs are always forwarded when present
    core = {k: normalized[k] for k in COMMUNICATION_CORE if k in normalized}
    return {**normalized, **core}


def topic_preference_ids(topics: List[str]) -> List[str]:
    ids: List[str] = []
    for topic in topics:
        for pref_id in TOPIC_PREFERENCES.get(topic, []):
            if pref_id not in ids:
                ids.append(pref_id)
    return ids


def build_context_pack(
    recipient_user_id: str,
    topics: Optional[List[str]],
    target_language: str,
    value_map: Dict[str, str],
    preference_payload: Optional[Dict[str, Any]] = None,
    power_mode: str = "peer",
) -> Dict[str, Any]:
    topics = list(topics or ["other"])
    wanted = topic_preference_ids(topics)
    included = [k for k in value_map if k in wanted]
    signals = [
        {"preference_id": k, "value_key": value_map[k], "instruction": map_instruction(k, value_map[k])}
        for k in included
    ]
    if power_mode not in POWER_MODES:
        power_mode = "peer"

    return {
        "context_version": CONTEXT_VERSION,
        "recipient_user_id": recipient_user_id,
        "target_language": target_language,
        "power": {
            "sender_role": "housemate",
            "recipient_role": "housemate",
            "power_mode": power_mode,
        },
        "topic_scope": {"topics": topics, "included_preference_ids": included},
        "instructions": {
            "tone": "warm_clear",
            "directness": "soft",
            "avoid": [
                "authority_language",
                "rules_language",
                "enforcement_language",
                "preference_disclosure",
            ],
        },
        "recipient_signals": signals,
        "preference_payload": preference_payload or {},
        "preference_value_map": value_map,
    }
