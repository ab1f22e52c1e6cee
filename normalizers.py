import re
import html
from typing import Any, Dict, List, Optional

from state import ImplementationStatus, Priority

VALID_PRIORITIES = [p.value for p in Priority]
VALID_STATUSES = [s.value for s in ImplementationStatus]


def normalize_feature(feature: Dict[str, Any], index: int) -> Dict[str, Any]:
    """Coerce a model-produced feature into the shape stored in the features collection."""
    priority = Priority.NOT_PRIORITIZED.value
    raw_priority = feature.get("priority")
    if raw_priority:
        p = re.sub(r"\s+", "-", str(raw_priority).lower())
        if p in VALID_PRIORITIES:
            priority = p
        elif "must" in p:
            priority = Priority.MUST_HAVE.value
        elif "nice" in p:
            priority = Priority.NICE_TO_HAVE.value

    status = ImplementationStatus.NOT_STARTED.value
    raw_status = feature.get("implementation_status")
    if raw_status:
        s = re.sub(r"\s+", "_", str(raw_status).lower())
        if s in VALID_STATUSES:
            status = s

    return {
        "name": feature.get("name") or f"Untitled Feature {index + 1}",
        "description": feature.get("description") or "",
        "priority": priority,
        "implementation_status": status,
        # leave room to insert between neighbours
        "position": index * 1000,
    }


def normalize_features(features: Optional[List[Any]]) -> List[Dict[str, Any]]:
    if not isinstance(features, list):
        return []
    return [normalize_feature(f, i) for i, f in enumerate(features) if isinstance(f, dict)]


def clamp_score(value: Any, low: int = 1, high: int = 5) -> int:
    try:
        score = int(round(float(value)))
    except (TypeError, ValueError):
        return low
    return max(low, min(high, score))


def normalize_persona(persona: Dict[str, Any]) -> Dict[str, Any]:
    scores = persona.get("scores") or {}
    key_points = persona.get("keyPoints") or []
    if not isinstance(key_points, list):
        key_points = [str(key_points)]
    return {
        "name": persona.get("name") or "Unnamed Persona",
        "overview": persona.get("overview") or "",
        "keyPoints": [str(p) for p in key_points],
        "topPainPoint": persona.get("topPainPoint") or "",
        "biggestFrustration": persona.get("biggestFrustration") or "",
        "currentSolution": persona.get("currentSolution") or "",
        "scores": {
            "problemMatch": clamp_score(scores.get("problemMatch")),
            "urgencyToSolve": clamp_score(scores.get("urgencyToSolve")),
            "abilityToPay": clamp_score(scores.get("abilityToPay")),
        },
    }


def persona_to_html(persona: Dict[str, Any]) -> str:
    """Render a persona as the HTML block stored in a PRD's target_audience field."""
    e = html.escape
    points = "\n      ".join(f"<li>{e(p)}</li>" for p in persona.get("keyPoints", []))
    scores = persona.get("scores", {})
    return f"""
<div class="persona">
  <div class="persona-header">
    <h3 class="persona-name">{e(persona.get("name", ""))}</h3>
  </div>

  <div class="persona-overview">
    <p>{e(persona.get("overview", ""))}</p>
  </div>

  <div class="persona-key-points">
    <h4>Key Points</h4>
    <ul>
      {points}
    </ul>
  </div>

  <div class="persona-problems">
    <h4>Problems & Solutions</h4>
    <ul>
      <li><strong>Top Pain Point:</strong> {e(persona.get("topPainPoint", ""))}</li>
      <li><strong>Biggest Frustration:</strong> {e(persona.get("biggestFrustration", ""))}</li>
      <li><strong>Current Solution:</strong> {e(persona.get("currentSolution", ""))}</li>
    </ul>
  </div>

  <div class="persona-scores">
    <h4>Persona Fit</h4>
    <ul>
      <li><strong>Problem Match:</strong> {scores.get("problemMatch", 1)}/5</li>
      <li><strong>Urgency to Solve:</strong> {scores.get("urgencyToSolve", 1)}/5</li>
      <li><strong>Ability to Pay:</strong> {scores.get("abilityToPay", 1)}/5</li>
    </ul>
  </div>
</div>"""


def extract_first_paragraph(html_string: str) -> str:
    m = re.search(r"<p>([^<]+)</p>", html_string)
    if m:
        return m.group(1).strip()
    return re.split(r"[.!?](?:\s|$)", html_string)[0].strip()


def strip_html(value: str) -> str:
    text = re.sub(r"<[^>]+>", "", value or "")
    return html.unescape(text).strip()


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (name or "").lower()).strip("-")
    return slug or "product"


def custom_section_key(name: str) -> str:
    key = re.sub(r"[^a-z0-9_]", "", re.sub(r"\s+", "_", (name or "").strip().lower()))
    if not key.startswith("custom_"):
        key = f"custom_{key}"
    return key


def normalize_custom_sections(sections: Any) -> Dict[str, str]:
    if not isinstance(sections, dict):
        return {}
    return {custom_section_key(k): str(v) for k, v in sections.items() if k}
