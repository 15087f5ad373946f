# rewrite_pipeline/quality.py
"""
Safety-lexicon evaluation for rewritten complaint messages.

Provides:
- EvalConfig: versions and thresholds
- evaluate_rewrite(request, response, power_mode, config) -> dict

The result dict carries:
  schema_valid      the response had ids and non-empty text
  lexicon_pass      no hard violation found
  tone_safety       "pass" | "warn" | "fail"
  intent_preserved  "pass" | "warn" (request/boundary intents need a polite ask)
  violations        unique violation codes, hard and warn-level
  judge_version, dataset_version

Deterministic and regex-only; only lexicon_pass and tone_safety gate completion.
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

LEXICON_VERSION = "complaint_rewrite_lexicon_v1"

# Violation codes
V_VULGARITY = "vulgarity"
V_SLUR = "slur"
V_PERSONAL_ATTACK = "personal_attack"
V_AUTHORITY = "authority"
V_PREFERENCE_DISCLOSURE = "preference_disclosure"
V_MEDICAL = "medical"
V_NEW_FACT = "new_fact"
V_NON_TARGET_LOCALE = "non_target_locale"
V_BLAME = "blame"
V_SARCASM_WARN = "sarcasm_warn"
V_HEDGE_WARN = "hedge_warn"

HARD_VIOLATIONS = frozenset({
    V_VULGARITY, V_SLUR, V_PERSONAL_ATTACK, V_AUTHORITY, V_PREFERENCE_DISCLOSURE,
    V_MEDICAL, V_NEW_FACT, V_NON_TARGET_LOCALE, V_BLAME,
})
WARN_VIOLATIONS = frozenset({V_SARCASM_WARN, V_HEDGE_WARN})

PROFANITY = re.compile(r"\b(fuck|shit|damn|asshole|bitch|bastard)\b", re.I)
SLURS = re.compile(r"\b(retard|idiot|moron)\b", re.I)
PERSONAL_ATTACK = re.compile(r"\byou\b[^.!?]*(stupid|lazy|disgusting|selfish|idiot)", re.I)
AUTHORITY = re.compile(r"(because\s+i\s*(am|'m)\s*(the\s*)?(owner|landlord)|house rules|you must|you have to)", re.I)
PREF_DISCLOSURE = re.compile(r"(your preferences|tailored for you|based on your answers)", re.I)
MEDICAL = re.compile(r"(adhd|autistic|bipolar|psychopath|crazy)", re.I)
BLAME = re.compile(r"(your fault|you always|you never)", re.I)
SARCASM = re.compile(r"(yeah right|sure you|of course you)", re.I)
HEDGE = re.compile(r"(maybe|perhaps|kinda|sort of|possibly)", re.I)
POLITE_ASK = re.compile(r"\b(could you|would you|please|can you|let's|would it be)\b", re.I)

# power-mode specific authority language
HIGHER_SENDER_AUTHORITY = re.compile(r"\b(must|have to|rules)\b", re.I)
HIGHER_RECIPIENT_DEMAND = re.compile(r"\b(must|have to|immediately)\b", re.I)


@dataclass
class EvalConfig:
    judge_version: str = "v1"
    dataset_version: str = "none"
    hedge_ratio_threshold: float = 0.01


def _unique(items: List[str]) -> List[str]:
    seen: List[str] = []
    for item in items:
        if item not in seen:
            seen.append(item)
    return seen


def evaluate_rewrite(request: Dict[str, Any], response: Dict[str, Any], power_mode: str = "peer",
                     config: Optional[EvalConfig] = None) -> Dict[str, Any]:
    """
    request:  {rewrite_request_id, target_locale, original_text, intent}
    response: {rewrite_request_id, recipient_user_id, rewritten_text, output_language}
    """
    if config is None:
        config = EvalConfig()

    violations: List[str] = []
    text = str(response.get("rewritten_text") or "")

    schema_valid = bool(response.get("rewrite_request_id")) and bool(response.get("recipient_user_id")) \
        and bool(text)
    if str(response.get("output_language") or "").lower() != str(request.get("target_locale") or "").lower():
        violations.append(V_NON_TARGET_LOCALE)

    # 1) Hard lexicon checks
    if PROFANITY.search(text):
        violations.append(V_VULGARITY)
    if SLURS.search(text):
        violations.append(V_SLUR)
    if PERSONAL_ATTACK.search(text):
        violations.append(V_PERSONAL_ATTACK)
    if AUTHORITY.search(text):
        violations.append(V_AUTHORITY)
    if PREF_DISCLOSURE.search(text):
        violations.append(V_PREFERENCE_DISCLOSURE)
    if MEDICAL.search(text):
        violations.append(V_MEDICAL)
    if BLAME.search(text):
        violations.append(V_BLAME)

    # 2) Warn-level
    if SARCASM.search(text):
        violations.append(V_SARCASM_WARN)
    hedge_hits = len(HEDGE.findall(text))
    token_count = max(1, len(text.split()))
    if hedge_hits / token_count > config.hedge_ratio_threshold:
        violations.append(V_HEDGE_WARN)

    # 3) Power mode
    if power_mode == "higher_sender" and HIGHER_SENDER_AUTHORITY.search(text):
        violations.append(V_AUTHORITY)
    if power_mode == "higher_recipient" and HIGHER_RECIPIENT_DEMAND.search(text):
        violations.append(V_AUTHORITY)

    # 4) Intent preservation (light heuristic)
    intent_preserved = "pass"
    if request.get("intent") in ("request", "boundary") and not POLITE_ASK.search(text):
        intent_preserved = "warn"

    violations = _unique(violations)
    hard = any(v in HARD_VIOLATIONS for v in violations)
    warn_only = not hard and any(v in WARN_VIOLATIONS for v in violations)
    tone_safety = "fail" if hard else ("warn" if warn_only else "pass")

    return {
        "schema_valid": schema_valid,
        "lexicon_pass": not hard,
        "tone_safety": tone_safety,
        "intent_preserved": intent_preserved,
        "violations": violations,
        "judge_version": config.judge_version,
        "dataset_version": config.dataset_version,
    }


def passes_gate(eval_result: Dict[str, Any]) -> bool:
    return bool(eval_result.get("lexicon_pass")) and eval_result.get("tone_safety") != "fail"
