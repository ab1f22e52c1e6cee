import re
import json
import logging
from typing import Any, Dict, List, Optional

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from database.models import OpenAILog
from errors import GENERIC, LLMError, ValidationError, WorkspaceError, llm_error_from
from normalizers import normalize_custom_sections, normalize_features, normalize_persona
from prompts import (
    FLOW_LAYOUT_SYSTEM,
    FLOW_PATTERNS,
    MVP_PRD_SYSTEM,
    PARSE_PRD_SYSTEM,
    PERSONAS_SYSTEM,
    REFINE_FLOW_SYSTEM,
    SECTION_GUIDANCE,
    TEXT_ACTIONS,
    USER_FLOW_SYSTEM,
)

logger = logging.getLogger(__name__)

JSON_OBJECT = {"type": "json_object"}


def _model_name(model: Any) -> str:
    return getattr(model, "model_name", None) or getattr(model, "model", None) or type(model).__name__


def _message_payload(messages: List[BaseMessage]) -> List[Dict[str, str]]:
    return [{"role": m.type, "content": str(m.content)} for m in messages]


def _product_block(context: Dict[str, Any]) -> str:
    lines = []
    for label, key in (
        ("Product", "name"),
        ("Description", "description"),
        ("Problem", "problem"),
        ("Solution", "solution"),
        ("Target audience", "target_audience"),
    ):
        value = (context or {}).get(key)
        if value:
            lines.append(f"{label}: {value}")
    return "\n".join(lines)


def _feature_block(features: List[Dict[str, Any]]) -> str:
    if not features:
        return "No features defined yet."
    return "\n".join(f"- {f.get('name', '')}: {f.get('description', '')}" for f in features)


def _page_block(pages: List[Dict[str, Any]]) -> str:
    return json.dumps(
        [
            {
                "name": p.get("name", ""),
                "description": p.get("description", ""),
                "layout_description": p.get("layout_description", ""),
                "features": p.get("features", []),
            }
            for p in pages
        ],
        indent=2,
    )


def normalize_pages(pages: Any) -> List[Dict[str, Any]]:
    """Keep only well-formed page proposals and coerce their fields."""
    if not isinstance(pages, list):
        return []
    result = []
    for page in pages:
        if not isinstance(page, dict) or not str(page.get("name") or "").strip():
            continue
        features = page.get("features") or []
        if not isinstance(features, list):
            features = [features]
        result.append({
            "name": str(page["name"]).strip(),
            "description": str(page.get("description") or ""),
            "layout_description": str(page.get("layout_description") or ""),
            "features": [str(f) for f in features if f],
        })
    return result


class LLMInterface:
    """Gateway to the chat model.

    Every call is written to the ``openai_logs`` collection (request, raw
    response or error, token counts). Audit writes are best effort: a failed
    insert is logged and the model result is still returned.
    """

    def __init__(
        self,
        model: Any = None,
        fast_model: Any = None,
        store: Any = None,
        model_name: str = "gpt-4o",
        fast_model_name: str = "gpt-4o-mini",
        timeout: int = 60,
    ):
        self.model = model or ChatOpenAI(model=model_name, temperature=0.7, timeout=timeout)
        # Text rewrites go through the cheaper model
        self.fast_model = fast_model or ChatOpenAI(model=fast_model_name, temperature=0.7, timeout=timeout)
        self.store = store

    def _json_from_text(self, text: str, default: Optional[Dict] = None) -> Optional[Dict]:
        try:
            return json.loads(text)
        except (TypeError, ValueError):
            pass
        try:
            m = re.search(r"\{[\s\S]*\}", text or "")
            if m:
                return json.loads(m.group(0))
        except ValueError:
            pass
        return default

    async def _audit(self, log: OpenAILog) -> None:
        if self.store is None:
            return
        try:
            await self.store.insert_openai_log(log)
        except WorkspaceError as e:
            logger.warning("[LLM][WARN] audit log for %s dropped: %s", log.request_type, e.message)

    async def _complete(
        self,
        request_type: str,
        messages: List[BaseMessage],
        *,
        fast: bool = False,
        json_mode: bool = True,
        user_id: Optional[str] = None,
        payload: Any = None,
        **params: Any,
    ) -> Dict[str, Any]:
        model = self.fast_model if fast else self.model
        bound = dict(params)
        if json_mode:
            bound["response_format"] = JSON_OBJECT
        runnable = model.bind(**bound) if bound else model

        log = OpenAILog(
            user_id=user_id,
            request_type=request_type,
            model=_model_name(model),
            request_payload=payload if payload is not None else _message_payload(messages),
        )
        try:
            result = await runnable.ainvoke(messages)
        except Exception as e:
            logger.error("[LLM][ERROR] %s failed: %s", request_type, e)
            log.error = str(e)
            await self._audit(log)
            raise llm_error_from(e) from e

        text = str(result.content).strip()
        usage = getattr(result, "usage_metadata", None) or {}
        log.response_payload = text
        log.input_tokens = usage.get("input_tokens")
        log.output_tokens = usage.get("output_tokens")
        await self._audit(log)
        logger.info("[LLM] %s ok (in=%s out=%s)", request_type, log.input_tokens, log.output_tokens)
        return {
            "text": text,
            "usage": {"input_tokens": log.input_tokens or 0, "output_tokens": log.output_tokens or 0},
        }

    async def _complete_json(self, request_type: str, messages: List[BaseMessage], **kwargs: Any) -> Dict[str, Any]:
        result = await self._complete(request_type, messages, **kwargs)
        data = self._json_from_text(result["text"])
        if not isinstance(data, dict):
            logger.error("[LLM][ERROR] %s returned unparsable JSON: %.200s", request_type, result["text"])
            raise LLMError(GENERIC)
        return data

    # -----------------------
    # Product research
    # -----------------------
    async def generate_personas(self, product: Dict[str, Any], user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        if not (product.get("name") or product.get("description")):
            raise ValidationError("A product name or description is required to generate personas.")
        human = f"Create customer personas for this product:\n\n{_product_block(product)}"
        data = await self._complete_json(
            "generate_personas",
            [SystemMessage(content=PERSONAS_SYSTEM), HumanMessage(content=human)],
            user_id=user_id,
            payload={"product": product},
        )
        personas = data.get("personas")
        if not isinstance(personas, list) or not personas:
            raise LLMError(GENERIC)
        return [normalize_persona(p) for p in personas if isinstance(p, dict)][:3]

    async def generate_mvp_prd(self, persona: Dict[str, Any], product: Dict[str, Any], user_id: Optional[str] = None) -> Dict[str, Any]:
        if not persona or not persona.get("name"):
            raise ValidationError("Select a persona before generating an MVP.")
        human = (
            f"{_product_block(product)}\n\n"
            f"Persona: {persona.get('name')}\n"
            f"Overview: {persona.get('overview', '')}\n"
            f"Top pain point: {persona.get('topPainPoint', '')}\n"
            f"Biggest frustration: {persona.get('biggestFrustration', '')}\n"
            f"Current solution: {persona.get('currentSolution', '')}"
        )
        data = await self._complete_json(
            "generate_mvp",
            [SystemMessage(content=MVP_PRD_SYSTEM), HumanMessage(content=human)],
            user_id=user_id,
            payload={"persona": persona, "product": product},
        )
        prd = data.get("prd") if isinstance(data.get("prd"), dict) else data
        return {
            "problem": prd.get("problem") or "",
            "solution": prd.get("solution") or "",
            "target_audience": prd.get("targetAudience") or prd.get("target_audience") or "",
            "tech_stack": prd.get("tech_stack") or "",
            "success_metrics": prd.get("success_metrics") or "",
            "features": normalize_features(prd.get("features")),
        }

    async def parse_prd(self, text: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        if not (text or "").strip():
            raise ValidationError("The PRD document is empty.")
        data = await self._complete_json(
            "parse_prd",
            [SystemMessage(content=PARSE_PRD_SYSTEM), HumanMessage(content=f"Parse this PRD:\n\n{text}")],
            user_id=user_id,
            payload={"length": len(text)},
            temperature=0.2,
        )
        return {
            "product_description": data.get("product_description") or "",
            "problem": data.get("problem") or "",
            "solution": data.get("solution") or "",
            "target_audience": data.get("target_audience") or "",
            "features": normalize_features(data.get("features")),
            "custom_sections": normalize_custom_sections(data.get("custom_sections")),
        }

    # -----------------------
    # User flow
    # -----------------------
    async def generate_user_flow(self, context: Dict[str, Any], features: List[Dict[str, Any]], user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        human = (
            f"{_product_block(context)}\n\n"
            f"Features:\n{_feature_block(features)}\n\n"
            "Propose the pages of the user flow."
        )
        data = await self._complete_json(
            "generate_user_flow",
            [SystemMessage(content=USER_FLOW_SYSTEM), HumanMessage(content=human)],
            user_id=user_id,
            payload={"context": context, "features": [f.get("name") for f in features]},
        )
        pages = normalize_pages(data.get("pages"))
        if not pages:
            raise LLMError(GENERIC)
        return pages

    async def refine_user_flow(
        self,
        context: Dict[str, Any],
        features: List[Dict[str, Any]],
        pages: List[Dict[str, Any]],
        requirements: str,
        user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not (requirements or "").strip():
            raise ValidationError("Describe what should change in the flow.")
        human = (
            f"{_product_block(context)}\n\n"
            f"Features:\n{_feature_block(features)}\n\n"
            f"Current pages:\n{_page_block(pages)}\n\n"
            f"Additional requirements:\n{requirements}"
        )
        data = await self._complete_json(
            "review_user_flow",
            [SystemMessage(content=REFINE_FLOW_SYSTEM), HumanMessage(content=human)],
            user_id=user_id,
            payload={"pages": pages, "requirements": requirements},
        )
        refined = normalize_pages(data.get("pages"))
        if not refined:
            raise LLMError(GENERIC)
        changes = data.get("changes") if isinstance(data.get("changes"), dict) else {}
        modified = [
            {"page_name": str(m.get("page_name", "")), "modifications": [str(x) for x in m.get("modifications") or []]}
            for m in changes.get("modified_pages") or []
            if isinstance(m, dict)
        ]
        return {
            "pages": refined,
            "changes": {
                "added_pages": [str(p) for p in changes.get("added_pages") or []],
                "modified_pages": modified,
            },
        }

    async def generate_flow_layout(self, pages: List[Dict[str, Any]], pattern: str = "auto", user_id: Optional[str] = None) -> Dict[str, Any]:
        if not pages:
            raise ValidationError("At least one page is required to lay out a flow.")
        if pattern not in FLOW_PATTERNS:
            raise ValidationError(f"Unknown flow pattern '{pattern}'.")
        listing = "\n\n".join(f"{p.get('name', '')}: {p.get('description', '')}" for p in pages)
        human = (
            f"Generate a {pattern} layout for these pages, left to right, "
            f"stacking pages vertically where one page leads to several:\n\n{listing}"
        )
        data = await self._complete_json(
            "generate_flow_layout",
            [SystemMessage(content=FLOW_LAYOUT_SYSTEM), HumanMessage(content=human)],
            user_id=user_id,
            payload={"pages": [p.get("name") for p in pages], "flowPattern": pattern},
            temperature=0.4,
        )

        layout_pages = []
        for i, page in enumerate(data.get("pages") or []):
            if not isinstance(page, dict) or not page.get("name"):
                continue
            position = page.get("position") if isinstance(page.get("position"), dict) else {}
            layout_pages.append({
                "id": str(page.get("id") or f"page-{i}"),
                "name": str(page["name"]),
                "position": {"x": float(position.get("x") or 0), "y": float(position.get("y") or 0)},
            })
        if not layout_pages:
            raise LLMError(GENERIC)
        connections = [
            {"source": str(c["source"]), "target": str(c["target"])}
            for c in data.get("connections") or []
            if isinstance(c, dict) and c.get("source") and c.get("target")
        ]
        return {"pages": layout_pages, "connections": connections}

    # -----------------------
    # Text actions
    # -----------------------
    async def process_text_action(self, request: Dict[str, Any], user_id: Optional[str] = None) -> Dict[str, Any]:
        """Rewrite a PRD passage. ``request`` is ``{type, data: {text, action, context}}``."""
        data = request.get("data") or {}
        text = (data.get("text") or "").strip()
        action = data.get("action")
        if not text:
            raise ValidationError("Select some text first.")
        if action not in TEXT_ACTIONS:
            raise ValidationError(f"Unsupported text action '{action}'.")

        template = TEXT_ACTIONS[action]
        context = data.get("context") or {}
        system = template["system"]
        guidance = SECTION_GUIDANCE.get(context.get("section") or "")
        if guidance:
            system += f"\n\nSection guidance: {guidance}"
        if context.get("productContext"):
            system += f"\n\nProduct context:\n{context['productContext']}"

        human = text
        if template["length_factor"]:
            target = max(1, int(len(text.split()) * template["length_factor"]))
            human = f"{text}\n\nAim for roughly {target} words."

        result = await self._complete(
            f"text_{action}",
            [SystemMessage(content=system), HumanMessage(content=human)],
            fast=True,
            json_mode=False,
            user_id=user_id,
            temperature=template["temperature"],
            max_tokens=template["max_tokens"],
        )
        return {"result": result["text"], "status": "success", "usage": result["usage"]}
