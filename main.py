import logging
from contextlib import asynccontextmanager
from time import perf_counter
from typing import Any, Dict, List, Optional, Tuple

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from langgraph.checkpoint.mongodb import MongoDBSaver
from pydantic import BaseModel, Field
from pymongo import MongoClient

from config import Settings
from database.database import MongoDBService
from database.redis import RedisService
from errors import WorkspaceError
from flow_builder import FlowBuilder
from flow_editor import EditorRegistry
from kanban import KanbanService
from llm import LLMInterface
from notes import NotesService
from prd_builder import PRDBuilder
from prompt_library import PromptLibrary
from uploads import ImageStorage

logger = logging.getLogger(__name__)


def _split(value: str) -> List[str]:
    return [v.strip() for v in (value or "").split(",") if v.strip()]


def _checkpointer(settings: Settings) -> Tuple[Any, Optional[MongoClient]]:
    """Return the run checkpointer and the Mongo client it owns, if any."""
    if settings.flow_checkpointer == "mongodb":
        logger.info("[FLOW] checkpointing generation runs in MongoDB")
        client = MongoClient(settings.mongodb_uri)
        return MongoDBSaver(client, db_name=settings.mongodb_db), client
    return None, None


# -----------------------
# Request bodies
# -----------------------
class CreateProductRequest(BaseModel):
    user_id: str
    name: str
    description: str = ""


class ProductFromPRDRequest(BaseModel):
    user_id: str
    name: str
    prd_text: str


class UpdatePRDRequest(BaseModel):
    problem: Optional[str] = None
    solution: Optional[str] = None
    target_audience: Optional[str] = None
    tech_stack: Optional[str] = None
    success_metrics: Optional[str] = None
    custom_sections: Optional[Dict[str, str]] = None


class PersonasRequest(BaseModel):
    refresh: bool = False


class MVPRequest(BaseModel):
    persona_id: str


class TextActionData(BaseModel):
    text: str
    action: str
    context: Optional[Dict[str, Any]] = None


class TextActionRequest(BaseModel):
    type: str = "text"
    data: TextActionData
    user_id: Optional[str] = None


class PageRequest(BaseModel):
    name: str
    description: str = ""
    layout_description: str = ""
    features: List[str] = Field(default_factory=list)


class PageUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    layout_description: Optional[str] = None
    features: Optional[List[str]] = None


class MoveRequest(BaseModel):
    x: float
    y: float


class ConnectRequest(BaseModel):
    source: str
    target: str


class GenerateFlowRequest(BaseModel):
    source: str = "generate"
    pages: Optional[List[Dict[str, Any]]] = None
    pattern: str = "auto"
    use_cache: bool = False


class ResumeRunRequest(BaseModel):
    selected_pages: Optional[List[Any]] = None
    additional_requirements: Optional[str] = None
    accept: Optional[bool] = None


class KanbanItemRequest(BaseModel):
    type: str
    name: str
    description: str = ""
    priority: Optional[str] = None
    bug_url: Optional[str] = None
    screenshot_url: Optional[str] = None
    layout_description: Optional[str] = None
    features: Optional[List[str]] = None


class KanbanUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    priority: Optional[str] = None
    status: Optional[str] = None
    implementation_status: Optional[str] = None
    bug_url: Optional[str] = None
    screenshot_url: Optional[str] = None
    layout_description: Optional[str] = None
    features: Optional[List[str]] = None


class KanbanMoveRequest(BaseModel):
    status: str
    position: Optional[int] = None


class NoteRequest(BaseModel):
    content: str = ""


class QuickNoteRequest(BaseModel):
    text: str


class PromptTemplateRequest(BaseModel):
    user_id: str
    name: str = ""
    description: str = ""
    template: str = ""
    category: str = "system"
    is_public: bool = False


class PromptTemplateUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    template: Optional[str] = None
    category: Optional[str] = None
    is_public: Optional[bool] = None


class VisibilityRequest(BaseModel):
    is_public: bool


class CopyPromptRequest(BaseModel):
    user_id: str


class ProductPromptRequest(BaseModel):
    name: str = ""
    description: str = ""
    prompt: str = ""
    template_id: Optional[str] = None


class ProductPromptUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    prompt: Optional[str] = None


# -----------------------
# Dependencies
# -----------------------
def get_prd_builder(request: Request) -> PRDBuilder:
    return request.app.state.prd_builder


def get_editors(request: Request) -> EditorRegistry:
    return request.app.state.editors


def get_flow_builder(request: Request) -> FlowBuilder:
    return request.app.state.flow_builder


def get_kanban(request: Request) -> KanbanService:
    return request.app.state.kanban


def get_notes(request: Request) -> NotesService:
    return request.app.state.notes


def get_prompts(request: Request) -> PromptLibrary:
    return request.app.state.prompts


def get_storage(request: Request) -> ImageStorage:
    return request.app.state.storage


router = APIRouter()


@router.get("/")
def root():
    return {"status": "success", "message": "PRD workspace API is running"}


# -----------------------
# Products and PRDs
# -----------------------
@router.post("/products")
async def create_product(body: CreateProductRequest, prd: PRDBuilder = Depends(get_prd_builder)):
    return {"status": "success", **await prd.create_product(body.user_id, body.name, body.description)}


@router.post("/products/from-prd")
async def create_product_from_prd(body: ProductFromPRDRequest, prd: PRDBuilder = Depends(get_prd_builder)):
    return {"status": "success", **await prd.create_product_from_prd(body.user_id, body.name, body.prd_text)}


@router.get("/products")
async def list_products(user_id: str, prd: PRDBuilder = Depends(get_prd_builder)):
    return {"status": "success", "products": await prd.list_products(user_id)}


@router.get("/products/{product_id}")
async def get_product(product_id: str, prd: PRDBuilder = Depends(get_prd_builder)):
    return {"status": "success", **await prd.get_product(product_id)}


@router.patch("/products/{product_id}/prd")
async def update_prd(product_id: str, body: UpdatePRDRequest, prd: PRDBuilder = Depends(get_prd_builder)):
    return {"status": "success", "prd": await prd.update_prd(product_id, body.model_dump(exclude_none=True))}


@router.delete("/products/{product_id}")
async def delete_product(product_id: str, prd: PRDBuilder = Depends(get_prd_builder)):
    await prd.delete_product(product_id)
    return {"status": "success", "message": "Product deleted"}


@router.post("/products/{product_id}/personas")
async def generate_personas(product_id: str, body: Optional[PersonasRequest] = None, prd: PRDBuilder = Depends(get_prd_builder)):
    refresh = body.refresh if body else False
    return {"status": "success", "personas": await prd.generate_personas(product_id, refresh=refresh)}


@router.post("/products/{product_id}/mvp")
async def generate_mvp(product_id: str, body: MVPRequest, prd: PRDBuilder = Depends(get_prd_builder)):
    return {"status": "success", **await prd.generate_mvp(product_id, body.persona_id)}


@router.post("/ai/text")
async def process_text(body: TextActionRequest, prd: PRDBuilder = Depends(get_prd_builder)):
    request = {"type": body.type, "data": body.data.model_dump(exclude_none=True)}
    return await prd.process_text(request, user_id=body.user_id)


# -----------------------
# Flow editor
# -----------------------
@router.get("/products/{product_id}/flow")
async def get_flow(product_id: str, editors: EditorRegistry = Depends(get_editors)):
    editor = await editors.get(product_id)
    return {"status": "success", "flow": editor.view()}


@router.post("/products/{product_id}/flow/reload")
async def reload_flow(product_id: str, editors: EditorRegistry = Depends(get_editors)):
    editor = await editors.reload(product_id)
    return {"status": "success", "flow": editor.view()}


@router.post("/products/{product_id}/flow/pages")
async def add_page(product_id: str, body: PageRequest, editors: EditorRegistry = Depends(get_editors)):
    editor = await editors.get(product_id)
    node = await editor.add_page(body.model_dump())
    return {"status": "success", "node": node.to_dict(), "flow": editor.view()}


@router.patch("/products/{product_id}/flow/pages/{node_id}")
async def update_page(product_id: str, node_id: str, body: PageUpdateRequest, editors: EditorRegistry = Depends(get_editors)):
    editor = await editors.get(product_id)
    node = await editor.update_page(node_id, body.model_dump(exclude_none=True))
    return {"status": "success", "node": node.to_dict(), "flow": editor.view()}


@router.post("/products/{product_id}/flow/pages/{node_id}/move")
async def move_page(product_id: str, node_id: str, body: MoveRequest, editors: EditorRegistry = Depends(get_editors)):
    editor = await editors.get(product_id)
    node = await editor.move_node(node_id, body.x, body.y)
    return {"status": "success", "node": node.to_dict(), "flow": editor.view()}


@router.delete("/products/{product_id}/flow/pages/{node_id}")
async def delete_page(product_id: str, node_id: str, editors: EditorRegistry = Depends(get_editors)):
    editor = await editors.get(product_id)
    await editor.delete_node(node_id)
    return {"status": "success", "flow": editor.view()}


@router.post("/products/{product_id}/flow/connections")
async def connect_pages(product_id: str, body: ConnectRequest, editors: EditorRegistry = Depends(get_editors)):
    editor = await editors.get(product_id)
    edge = await editor.connect(body.source, body.target)
    return {"status": "success", "edge": edge.to_dict(), "flow": editor.view()}


@router.delete("/products/{product_id}/flow/connections/{edge_id}")
async def delete_connection(product_id: str, edge_id: str, editors: EditorRegistry = Depends(get_editors)):
    editor = await editors.get(product_id)
    await editor.delete_edge(edge_id)
    return {"status": "success", "flow": editor.view()}


@router.post("/products/{product_id}/flow/undo")
async def undo(product_id: str, editors: EditorRegistry = Depends(get_editors)):
    editor = await editors.get(product_id)
    changed = await editor.undo()
    return {"status": "success", "changed": changed, "flow": editor.view()}


@router.post("/products/{product_id}/flow/redo")
async def redo(product_id: str, editors: EditorRegistry = Depends(get_editors)):
    editor = await editors.get(product_id)
    changed = await editor.redo()
    return {"status": "success", "changed": changed, "flow": editor.view()}


@router.post("/products/{product_id}/flow/flush")
async def flush_positions(product_id: str, editors: EditorRegistry = Depends(get_editors)):
    editor = await editors.get(product_id)
    pending = await editor.flush_positions()
    return {"status": "success", "pending_positions": pending}


# -----------------------
# Flow generation
# -----------------------
@router.post("/products/{product_id}/flow/generate")
async def generate_flow(product_id: str, body: GenerateFlowRequest, flows: FlowBuilder = Depends(get_flow_builder)):
    run = await flows.start_run(product_id, source=body.source, pages=body.pages, pattern=body.pattern, use_cache=body.use_cache)
    return {"status": "success", "run": run}


@router.get("/flow-runs/{run_id}")
async def get_flow_run(run_id: str, flows: FlowBuilder = Depends(get_flow_builder)):
    return {"status": "success", "run": await flows.get_run(run_id)}


@router.post("/flow-runs/{run_id}/resume")
async def resume_flow_run(run_id: str, body: ResumeRunRequest, flows: FlowBuilder = Depends(get_flow_builder)):
    run = await flows.resume_run(run_id, body.model_dump(exclude_none=True))
    return {"status": "success", "run": run}


# -----------------------
# Kanban
# -----------------------
@router.get("/products/{product_id}/kanban")
async def get_board(product_id: str, types: str = "", priorities: str = "", search: str = "", kanban: KanbanService = Depends(get_kanban)):
    board = await kanban.board(product_id, _split(types), _split(priorities), search)
    return {"status": "success", **board}


@router.post("/products/{product_id}/kanban/items")
async def add_item(product_id: str, body: KanbanItemRequest, kanban: KanbanService = Depends(get_kanban)):
    data = body.model_dump(exclude_none=True, exclude={"type"})
    return {"status": "success", "item": await kanban.add_item(product_id, body.type, data)}


@router.patch("/kanban/items/{item_type}/{item_id}")
async def update_item(item_type: str, item_id: str, body: KanbanUpdateRequest, kanban: KanbanService = Depends(get_kanban)):
    item = await kanban.update_item(item_type, item_id, body.model_dump(exclude_none=True))
    return {"status": "success", "item": item}


@router.post("/kanban/items/{item_type}/{item_id}/move")
async def move_item(item_type: str, item_id: str, body: KanbanMoveRequest, kanban: KanbanService = Depends(get_kanban)):
    item = await kanban.move_item(item_type, item_id, body.status, body.position)
    return {"status": "success", "item": item}


@router.delete("/kanban/items/{item_type}/{item_id}")
async def delete_item(item_type: str, item_id: str, kanban: KanbanService = Depends(get_kanban)):
    await kanban.delete_item(item_type, item_id)
    return {"status": "success", "message": "Item deleted"}


# -----------------------
# Notes
# -----------------------
@router.get("/products/{product_id}/notes")
async def get_note(product_id: str, notes: NotesService = Depends(get_notes)):
    return {"status": "success", "note": await notes.get(product_id)}


@router.put("/products/{product_id}/notes")
async def save_note(product_id: str, body: NoteRequest, notes: NotesService = Depends(get_notes)):
    return {"status": "success", "note": await notes.save(product_id, body.content)}


@router.post("/products/{product_id}/notes/quick")
async def add_quick_note(product_id: str, body: QuickNoteRequest, notes: NotesService = Depends(get_notes)):
    return {"status": "success", "note": await notes.append(product_id, body.text)}


# -----------------------
# Prompt library
# -----------------------
@router.get("/prompts")
async def list_prompts(user_id: str, category: str = "all", prompts: PromptLibrary = Depends(get_prompts)):
    return {"status": "success", "prompts": await prompts.list_templates(user_id, category)}


@router.get("/prompts/community")
async def list_community_prompts(category: str = "all", prompts: PromptLibrary = Depends(get_prompts)):
    return {"status": "success", "prompts": await prompts.list_community(category)}


@router.post("/prompts")
async def create_prompt(body: PromptTemplateRequest, prompts: PromptLibrary = Depends(get_prompts)):
    data = body.model_dump(exclude={"user_id"})
    return {"status": "success", "prompt": await prompts.create_template(body.user_id, data)}


@router.patch("/prompts/{template_id}")
async def update_prompt(template_id: str, body: PromptTemplateUpdateRequest, prompts: PromptLibrary = Depends(get_prompts)):
    prompt = await prompts.update_template(template_id, body.model_dump(exclude_none=True))
    return {"status": "success", "prompt": prompt}


@router.post("/prompts/{template_id}/visibility")
async def set_prompt_visibility(template_id: str, body: VisibilityRequest, prompts: PromptLibrary = Depends(get_prompts)):
    return {"status": "success", "prompt": await prompts.set_public(template_id, body.is_public)}


@router.delete("/prompts/{template_id}")
async def delete_prompt(template_id: str, prompts: PromptLibrary = Depends(get_prompts)):
    await prompts.delete_template(template_id)
    return {"status": "success", "message": "Prompt deleted"}


@router.post("/prompts/{template_id}/duplicate")
async def duplicate_prompt(template_id: str, body: CopyPromptRequest, prompts: PromptLibrary = Depends(get_prompts)):
    return {"status": "success", "prompt": await prompts.duplicate_template(body.user_id, template_id)}


@router.post("/prompts/{template_id}/save")
async def save_prompt_to_personal(template_id: str, body: CopyPromptRequest, prompts: PromptLibrary = Depends(get_prompts)):
    return {"status": "success", "prompt": await prompts.save_to_personal(body.user_id, template_id)}


@router.get("/products/{product_id}/prompts")
async def list_product_prompts(product_id: str, prompts: PromptLibrary = Depends(get_prompts)):
    return {"status": "success", "prompts": await prompts.list_product_prompts(product_id)}


@router.post("/products/{product_id}/prompts")
async def add_product_prompt(product_id: str, body: ProductPromptRequest, prompts: PromptLibrary = Depends(get_prompts)):
    if body.template_id:
        prompt = await prompts.add_template_to_product(product_id, body.template_id)
    else:
        prompt = await prompts.create_product_prompt(product_id, body.model_dump(exclude={"template_id"}))
    return {"status": "success", "prompt": prompt}


@router.patch("/product-prompts/{prompt_id}")
async def update_product_prompt(prompt_id: str, body: ProductPromptUpdateRequest, prompts: PromptLibrary = Depends(get_prompts)):
    prompt = await prompts.update_product_prompt(prompt_id, body.model_dump(exclude_none=True))
    return {"status": "success", "prompt": prompt}


@router.delete("/product-prompts/{prompt_id}")
async def delete_product_prompt(prompt_id: str, prompts: PromptLibrary = Depends(get_prompts)):
    await prompts.delete_product_prompt(prompt_id)
    return {"status": "success", "message": "Prompt deleted"}


@router.post("/product-prompts/{prompt_id}/copy")
async def copy_product_prompt(prompt_id: str, body: CopyPromptRequest, prompts: PromptLibrary = Depends(get_prompts)):
    return {"status": "success", "prompt": await prompts.copy_product_prompt_to_personal(body.user_id, prompt_id)}


# -----------------------
# Files
# -----------------------
@router.post("/uploads/{bucket}")
async def upload_image(bucket: str, file: UploadFile = File(...), path: str = Form(""), storage: ImageStorage = Depends(get_storage)):
    data = await file.read()
    return {"status": "success", **storage.save(bucket, path, data)}


@router.get("/files/{key:path}")
def download_file(key: str, expires: int, signature: str, storage: ImageStorage = Depends(get_storage)):
    return FileResponse(storage.open(key, expires, signature), media_type="image/jpeg")


@router.delete("/files/{key:path}")
def delete_file(key: str, expires: int, signature: str, storage: ImageStorage = Depends(get_storage)):
    storage.open(key, expires, signature)
    storage.delete(key)
    return {"status": "success", "message": "File deleted"}


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[MongoDBService] = None,
    cache: Optional[RedisService] = None,
    llm: Optional[LLMInterface] = None,
    checkpointer: Any = None,
) -> FastAPI:
    """Build the API. Clients passed in are used as-is and not closed on shutdown."""
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.settings = settings
        app.state.store = store or MongoDBService.from_uri(settings.mongodb_uri, settings.mongodb_db)
        app.state.cache = cache or await RedisService.from_settings(
            settings.redis_host, settings.redis_port, settings.redis_username, settings.redis_password
        )
        app.state.llm = llm or LLMInterface(
            store=app.state.store,
            model_name=settings.openai_model,
            fast_model_name=settings.openai_fast_model,
            timeout=settings.llm_timeout_s,
        )
        saver, saver_client = (checkpointer, None) if checkpointer is not None else _checkpointer(settings)
        app.state.editors = EditorRegistry(app.state.store)
        app.state.prd_builder = PRDBuilder(app.state.store, app.state.llm, app.state.cache, app.state.editors)
        app.state.flow_builder = FlowBuilder(
            app.state.store,
            app.state.llm,
            app.state.editors,
            cache=app.state.cache,
            checkpointer=saver,
        )
        app.state.kanban = KanbanService(app.state.store, app.state.editors)
        app.state.notes = NotesService(app.state.store)
        app.state.prompts = PromptLibrary(app.state.store)
        app.state.storage = ImageStorage(
            settings.upload_dir,
            settings.upload_signing_key,
            max_bytes=settings.upload_max_bytes,
            url_ttl_s=settings.signed_url_ttl_s,
        )
        logger.info("[APP] services ready (db=%s)", settings.mongodb_db)
        yield
        if store is None:
            app.state.store.close()
        if cache is None:
            await app.state.cache.close()
        if saver_client is not None:
            saver_client.close()

    app = FastAPI(title="PRD Workspace", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Simple latency middleware
    @app.middleware("http")
    async def add_process_time_header(request: Request, call_next):
        start = perf_counter()
        response = await call_next(request)
        response.headers["X-Process-Time-ms"] = str(round((perf_counter() - start) * 1000, 1))
        return response

    @app.exception_handler(WorkspaceError)
    async def workspace_error_handler(request: Request, exc: WorkspaceError):
        if exc.status_code >= 500:
            logger.error("[APP][ERROR] %s %s: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"status": "error", "message": exc.message, **exc.details})

    app.include_router(router)
    return app


if __name__ == "__main__":
    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    uvicorn.run(create_app(settings), host="0.0.0.0", port=8000)
