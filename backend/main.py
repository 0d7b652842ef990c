"""
FastAPI Backend for TeachSpark

Provides REST API endpoints for:
- Lesson and slide CRUD (Supabase persistence)
- AI lesson plans, slides and worksheets (Gemini / Claude / FLUX)
- Slide editing, lesson chat commands, batch editing and context compression
- Sequential slide generation and saved generation configs
- Generation limits and WayForPay payments
- Admin panel data
"""

from fastapi import FastAPI, HTTPException, Depends, Request, BackgroundTasks
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from typing import Optional, List, Dict, Any, Callable
from urllib.parse import parse_qs
import os
import sys
import json
import time
import signal

# Add the teachspark package to Python path
backend_dir = os.path.dirname(os.path.abspath(__file__))
project_root = os.path.dirname(backend_dir)

package_src = os.path.join(project_root, 'teachspark', 'src')
if os.path.exists(package_src) and package_src not in sys.path:
    sys.path.insert(0, package_src)

from teachspark.config import get_settings
from lib.logger import setup_logging, get_logger

setup_logging(level=get_settings().log_level, use_colors=True)

logger = get_logger("backend.main")

from lib.supabase_client import get_supabase_client
from lib.auth import get_current_user, get_admin_user, require_super_admin

from teachspark.errors import TeachSparkError, ValidationError
from teachspark.ai_clients import GeminiClient
from teachspark.activity_tracking import ActivityTracker, TokenTracker
from teachspark.admin import AdminService
from teachspark.batch_editing import (
    BatchSlideEditingService,
    BatchSessionReaper,
    BatchEditResult,
    OptimizedBatchEditService,
    determine_affected_slides,
    slide_number_from_key,
)
from teachspark.content_generation import ContentService, LessonPlanService, get_content_service
from teachspark.context_compression import (
    COMPRESSION_THRESHOLD,
    CompressionOptions,
    ContextCompressionService,
    calculate_metrics,
    estimate_tokens,
)
from teachspark.generation_configs import GenerationConfigService
from teachspark.generation_limits import GenerationLimitService
from teachspark.image_generation import TogetherImageService
from teachspark.lessons import LessonService
from teachspark.payments import PaymentService
from teachspark.slide_editing import GeminiSimpleEditService, GeminiSlideEditingService, SlideComment
from teachspark.slide_commands import SlideCommandService, actions_to_slide_updates
from teachspark.slide_generation import (
    FEATURES as SEQUENTIAL_FEATURES,
    GeneratedSlide,
    SequentialSlideGenerationService,
    parse_slide_descriptions,
)
from teachspark.slide_image_processor import SlideImageProcessor
from teachspark.temporary_images import TemporaryImageService, build_url_map
from teachspark.worksheet_generation import GeminiWorksheetGenerationService, WorksheetImageService
from teachspark.worksheet_parser import WorksheetParser

# Initialize FastAPI app
app = FastAPI(
    title="TeachSpark API",
    description="REST API for AI-generated lessons, slides and worksheets",
    version="1.0.0"
)

# CORS middleware for Next.js frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://localhost:3001",
        "http://127.0.0.1:3000",
        get_settings().app_url,
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(TeachSparkError)
async def teachspark_error_handler(request: Request, exc: TeachSparkError):
    """Render domain errors as the standard error envelope."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed", data={"code": exc.code, "message": exc.message})
    else:
        logger.warning(f"{request.method} {request.url.path} rejected", data={"code": exc.code, "message": exc.message})
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ==================== Service Dependencies ====================

_gemini_client = None
_batch_service = None
_batch_reaper = None


def get_supabase():
    return get_supabase_client()


def get_gemini() -> GeminiClient:
    """Get or create the shared Gemini client."""
    global _gemini_client
    if _gemini_client is None:
        _gemini_client = GeminiClient(get_settings().gemini_api_key)
    return _gemini_client


def get_lesson_service(supabase=Depends(get_supabase)) -> LessonService:
    return LessonService(supabase)


def get_limit_service(supabase=Depends(get_supabase)) -> GenerationLimitService:
    return GenerationLimitService(supabase)


def get_activity_tracker(supabase=Depends(get_supabase)) -> ActivityTracker:
    return ActivityTracker(supabase)


def get_token_tracker(supabase=Depends(get_supabase)) -> TokenTracker:
    return TokenTracker(supabase)


def get_payment_service(supabase=Depends(get_supabase)) -> PaymentService:
    return PaymentService(supabase, get_settings())


def get_admin_service(supabase=Depends(get_supabase)) -> AdminService:
    return AdminService(supabase)


def get_temp_images(supabase=Depends(get_supabase)) -> TemporaryImageService:
    return TemporaryImageService(supabase)


def get_image_service() -> TogetherImageService:
    return TogetherImageService(get_settings().together_api_key)


def get_image_processor(images: TogetherImageService = Depends(get_image_service),
                        temp_images: TemporaryImageService = Depends(get_temp_images)) -> SlideImageProcessor:
    return SlideImageProcessor(images, temp_images)


def get_content_factory(
    image_processor: SlideImageProcessor = Depends(get_image_processor),
) -> Callable[[str], ContentService]:
    """Provider name → ContentService, sharing the slide image processor."""
    return lambda provider: get_content_service(provider, get_settings(), image_processor)


def get_lesson_plan_service() -> LessonPlanService:
    return LessonPlanService(get_gemini())


def get_simple_edit_service() -> GeminiSimpleEditService:
    return GeminiSimpleEditService(get_gemini())


def get_slide_editing_service(
    image_processor: SlideImageProcessor = Depends(get_image_processor),
) -> GeminiSlideEditingService:
    return GeminiSlideEditingService(get_gemini(), image_processor)


def get_compression_service() -> ContextCompressionService:
    return ContextCompressionService(get_gemini())


def get_worksheet_service() -> GeminiWorksheetGenerationService:
    return GeminiWorksheetGenerationService(get_gemini())


def get_worksheet_image_service(images: TogetherImageService = Depends(get_image_service)) -> WorksheetImageService:
    return WorksheetImageService(images)


def get_slide_command_service() -> SlideCommandService:
    return SlideCommandService(get_gemini())


def get_sequential_factory(
    content_factory=Depends(get_content_factory),
) -> Callable[[str], SequentialSlideGenerationService]:
    return lambda provider: SequentialSlideGenerationService(content_factory(provider))


def get_config_service(supabase=Depends(get_supabase)) -> GenerationConfigService:
    return GenerationConfigService(supabase)


def get_batch_service() -> BatchSlideEditingService:
    """Get or create the batch edit session store."""
    global _batch_service
    if _batch_service is None:
        _batch_service = BatchSlideEditingService()
    return _batch_service


def get_optimized_batch_service(
    editor: GeminiSimpleEditService = Depends(get_simple_edit_service),
) -> OptimizedBatchEditService:
    return OptimizedBatchEditService(editor)


# ==================== Pydantic Models ====================

class LessonCreate(BaseModel):
    title: str
    targetAge: Optional[str] = None
    age_group: Optional[str] = None
    description: Optional[str] = None
    subject: Optional[str] = None
    duration: Optional[int] = None
    difficulty: Optional[str] = None
    tags: List[str] = []
    slides: List[Dict[str, Any]] = []
    metadata: Dict[str, Any] = {}
    createDefaultSlides: bool = True


class SlideCreate(BaseModel):
    title: str
    description: Optional[str] = None
    type: Optional[str] = None
    html_content: Optional[str] = None
    status: Optional[str] = None
    position: Optional[int] = None


class SlideReorder(BaseModel):
    slideIds: List[str]


class LessonPlanRequest(BaseModel):
    ageGroup: str
    topic: str
    slideCount: int = 6
    language: str = "en"
    additionalInfo: Optional[str] = None
    learningGoals: List[str] = []


class MarkdownPlanRequest(BaseModel):
    topic: str
    ageGroup: str
    slideCount: int = 6
    language: str = "en"
    additionalInfo: Optional[str] = None
    provider: str = "gemini"
    saveLesson: bool = True


class SlideGenerateRequest(BaseModel):
    title: str
    description: str = ""
    topic: str
    ageGroup: str
    slideNumber: int = 1
    totalSlides: int = 1
    type: str = "content"
    provider: str = "gemini"
    sessionId: Optional[str] = None
    lessonId: Optional[str] = None


class SequentialSlidesRequest(BaseModel):
    slideDescriptions: Any = None
    topic: str = "lesson"
    age: str = "6-8 years"
    provider: str = "gemini"
    lessonId: Optional[str] = None
    sessionId: Optional[str] = None


class LessonChatRequest(BaseModel):
    message: str
    selectedSlideId: Optional[str] = None
    applyActions: bool = False


class EditPlanRequest(BaseModel):
    originalPlan: str
    comments: List[Any]
    topic: str = "lesson"
    ageGroup: str = ""
    language: str = "en"
    provider: str = "gemini"


class ImageRequest(BaseModel):
    prompt: str
    width: int = 1024
    height: int = 768


class SimpleEditRequest(BaseModel):
    instruction: Optional[str] = None
    slideContent: Optional[str] = None
    topic: str = "lesson"
    age: str = "6-8 years"
    batchId: Optional[str] = None
    slideIndex: Optional[int] = None


class CommentEditRequest(BaseModel):
    slide: Dict[str, Any]
    comments: List[Dict[str, Any]]
    context: Dict[str, Any]
    sessionId: Optional[str] = None


class BatchEditRequest(BaseModel):
    instruction: str
    mode: str = "all"
    slideNumbers: Optional[List[int]] = None
    slideRange: Optional[Dict[str, int]] = None
    topic: str = "lesson"
    age: str = "6-8 years"


class OptimizedBatchRequest(BaseModel):
    editPlan: Dict[str, str]
    topic: str = "lesson"
    age: str = "6-8 years"


class CompressRequest(BaseModel):
    context: str = ""
    options: Optional[Dict[str, Any]] = None
    adaptive: bool = False


class WorksheetTopicRequest(BaseModel):
    message: str
    conversationHistory: List[Dict[str, Any]] = []
    ageGroup: Optional[str] = None
    contentMode: str = "pdf"


class WorksheetImagesRequest(BaseModel):
    worksheet: Dict[str, Any]


class PaymentCreateRequest(BaseModel):
    amount: float
    currency: str = "USD"
    productName: Optional[str] = None
    language: str = "UA"


class ImageMigrationRequest(BaseModel):
    lessonId: str
    sessionId: str


class UserUpdate(BaseModel):
    full_name: Optional[str] = None
    role: Optional[str] = None
    subscription_type: Optional[str] = None
    subscription_expires_at: Optional[str] = None


class BlockRequest(BaseModel):
    block: bool


class GenerationLimitUpdate(BaseModel):
    limit: int


class BulkDeleteRequest(BaseModel):
    lessonIds: List[str]


# ==================== Helper Functions ====================

def track_ai_usage(tokens: TokenTracker, tracker: ActivityTracker, user: dict, service_name: str,
                   result, metadata: dict = None):
    """Record AI usage; tracking never fails the request."""
    if result is None:
        return
    tokens.track_result(user["id"], service_name, result, metadata)
    tracker.track_ai_request(user["id"], service_name, result.model, metadata)


def comments_to_text(comments: List[Any]) -> str:
    lines = []
    for comment in comments:
        if isinstance(comment, dict):
            section = comment.get("sectionType") or comment.get("section") or "general"
            lines.append(f"- [{section}] {comment.get('comment', '')}")
        else:
            lines.append(f"- {comment}")
    return "\n".join(lines)


def parse_webhook_body(raw: bytes) -> Dict[str, Any]:
    """WayForPay posts JSON, or a form body whose single key is the JSON document."""
    text = raw.decode("utf-8") if raw else ""
    if not text.strip():
        raise ValidationError("Empty webhook body")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    form = parse_qs(text, keep_blank_values=True)
    if len(form) == 1:
        key = next(iter(form))
        try:
            return json.loads(key)
        except json.JSONDecodeError:
            pass
    raise ValidationError("Webhook body is not valid JSON")


# ==================== API Endpoints ====================

@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "status": "ok",
        "service": "TeachSpark API",
        "version": "1.0.0",
    }


# ---------- Lessons ----------

@app.get("/api/lessons")
async def list_lessons(
    page: int = 1,
    limit: int = 10,
    subject: Optional[str] = None,
    age_group: Optional[str] = None,
    difficulty: Optional[str] = None,
    status: Optional[str] = None,
    is_public: Optional[bool] = None,
    search: Optional[str] = None,
    user: dict = Depends(get_current_user),
    lessons: LessonService = Depends(get_lesson_service),
):
    filters = {"subject": subject, "age_group": age_group, "difficulty": difficulty,
               "status": status, "is_public": is_public, "search": search}
    return lessons.get_user_lessons(user["id"], filters, page=page, limit=limit)


@app.post("/api/lessons")
async def create_lesson(
    body: LessonCreate,
    user: dict = Depends(get_current_user),
    lessons: LessonService = Depends(get_lesson_service),
    tracker: ActivityTracker = Depends(get_activity_tracker),
):
    data = body.model_dump()
    lesson = lessons.create_lesson(user["id"], data, create_default_slides=body.createDefaultSlides)
    tracker.track_lesson_created(user["id"], lesson["id"], lesson["title"], lesson["age_group"],
                                 lesson.get("subject") or "", lesson.get("duration"))
    return {"success": True, "lesson": lesson}


@app.get("/api/lessons/public")
async def public_lessons(
    page: int = 1,
    limit: int = 10,
    subject: Optional[str] = None,
    age_group: Optional[str] = None,
    search: Optional[str] = None,
    lessons: LessonService = Depends(get_lesson_service),
):
    return lessons.get_public_lessons(page, limit, {"subject": subject, "age_group": age_group, "search": search})


@app.get("/api/lessons/stats")
async def lesson_stats(user: dict = Depends(get_current_user),
                       lessons: LessonService = Depends(get_lesson_service)):
    return lessons.get_user_stats(user["id"])


@app.get("/api/lessons/{lesson_id}")
async def get_lesson(lesson_id: str, user: dict = Depends(get_current_user),
                     lessons: LessonService = Depends(get_lesson_service)):
    lesson = lessons.get_lesson_with_slides(lesson_id, user["id"])
    if lesson is None:
        raise HTTPException(status_code=404, detail="Lesson not found")
    return lesson


@app.put("/api/lessons/{lesson_id}")
async def update_lesson(lesson_id: str, updates: Dict[str, Any], user: dict = Depends(get_current_user),
                        lessons: LessonService = Depends(get_lesson_service)):
    return {"success": True, "lesson": lessons.update_lesson(lesson_id, user["id"], updates)}


@app.delete("/api/lessons/{lesson_id}")
async def delete_lesson(lesson_id: str, user: dict = Depends(get_current_user),
                        lessons: LessonService = Depends(get_lesson_service)):
    lessons.delete_lesson(lesson_id, user["id"])
    return {"status": "deleted", "lesson_id": lesson_id}


@app.post("/api/lessons/{lesson_id}/duplicate")
async def duplicate_lesson(lesson_id: str, user: dict = Depends(get_current_user),
                           lessons: LessonService = Depends(get_lesson_service)):
    return {"success": True, "lesson": lessons.duplicate_lesson(lesson_id, user["id"])}


@app.post("/api/lessons/{lesson_id}/views")
async def increment_views(lesson_id: str, lessons: LessonService = Depends(get_lesson_service)):
    lessons.increment_views(lesson_id)
    return {"success": True}


# ---------- Slides ----------

@app.get("/api/lessons/{lesson_id}/slides")
async def get_slides(lesson_id: str, user: dict = Depends(get_current_user),
                     lessons: LessonService = Depends(get_lesson_service)):
    lessons.require_lesson(lesson_id, user["id"])
    return {"slides": lessons.get_slides(lesson_id)}


@app.post("/api/lessons/{lesson_id}/slides")
async def add_slide(lesson_id: str, body: SlideCreate, user: dict = Depends(get_current_user),
                    lessons: LessonService = Depends(get_lesson_service)):
    data = body.model_dump(exclude={"position"}, exclude_none=True)
    return {"success": True, "slide": lessons.add_slide(lesson_id, user["id"], data, position=body.position)}


@app.post("/api/lessons/{lesson_id}/slides/reorder")
async def reorder_slides(lesson_id: str, body: SlideReorder, user: dict = Depends(get_current_user),
                         lessons: LessonService = Depends(get_lesson_service)):
    return {"success": True, "slides": lessons.reorder_slides(lesson_id, user["id"], body.slideIds)}


@app.put("/api/lessons/{lesson_id}/slides/{slide_id}")
async def update_slide(lesson_id: str, slide_id: str, updates: Dict[str, Any],
                       user: dict = Depends(get_current_user),
                       lessons: LessonService = Depends(get_lesson_service)):
    return {"success": True, "slide": lessons.update_slide(lesson_id, user["id"], slide_id, updates)}


@app.delete("/api/lessons/{lesson_id}/slides/{slide_id}")
async def delete_slide(lesson_id: str, slide_id: str, user: dict = Depends(get_current_user),
                       lessons: LessonService = Depends(get_lesson_service)):
    lessons.delete_slide(lesson_id, user["id"], slide_id)
    return {"status": "deleted", "slide_id": slide_id}


# ---------- Generation ----------

@app.get("/api/generation/usage")
async def generation_usage(user: dict = Depends(get_current_user),
                           limits: GenerationLimitService = Depends(get_limit_service)):
    return limits.get_generation_usage(user["id"])


@app.post("/api/templates/lesson-plan")
async def generate_lesson_plan_json(
    body: LessonPlanRequest,
    user: dict = Depends(get_current_user),
    limits: GenerationLimitService = Depends(get_limit_service),
    tokens: TokenTracker = Depends(get_token_tracker),
    tracker: ActivityTracker = Depends(get_activity_tracker),
    planner: LessonPlanService = Depends(get_lesson_plan_service),
):
    """Structured JSON lesson plan. Counts against the generation limit."""
    start_time = time.time()
    logger.request("POST", "/api/templates/lesson-plan", user_id=user["id"], data={"topic": body.topic})
    limits.enforce(user["id"])

    result = await planner.generate_lesson_plan_json(body.model_dump())
    usage = result["usage"]
    tokens.track_token_usage(user["id"], "lesson_plan_json", usage["model"],
                             usage["inputTokens"], usage["outputTokens"], {"topic": body.topic})
    tracker.track_ai_request(user["id"], "lesson_plan_json", usage["model"], {"topic": body.topic})
    limits.increment_generation_count(user["id"])

    logger.response(200, "/api/templates/lesson-plan", duration=time.time() - start_time)
    return {"success": True, "lessonPlan": result["plan"], "usage": usage}


@app.post("/api/generation/lesson")
async def generate_lesson(
    body: MarkdownPlanRequest,
    user: dict = Depends(get_current_user),
    limits: GenerationLimitService = Depends(get_limit_service),
    tokens: TokenTracker = Depends(get_token_tracker),
    tracker: ActivityTracker = Depends(get_activity_tracker),
    lessons: LessonService = Depends(get_lesson_service),
    content_factory=Depends(get_content_factory),
):
    """Markdown lesson plan from the chosen provider, optionally saved as a draft lesson."""
    logger.section("LESSON GENERATION", {"topic": body.topic, "age": body.ageGroup, "provider": body.provider})
    limits.enforce(user["id"])

    service = content_factory(body.provider)
    result = await service.generate_lesson_plan(body.topic, body.ageGroup, body.slideCount,
                                                body.language, body.additionalInfo)
    track_ai_usage(tokens, tracker, user, f"lesson_plan_{service.provider}", result, {"topic": body.topic})
    limits.increment_generation_count(user["id"])

    lesson = None
    if body.saveLesson:
        lesson = lessons.create_lesson(user["id"], {
            "title": body.topic,
            "targetAge": body.ageGroup,
            "metadata": {"lessonPlan": result.text, "provider": service.provider, "language": body.language},
        }, create_default_slides=False)
        tracker.track_lesson_created(user["id"], lesson["id"], lesson["title"], body.ageGroup)

    logger.success("Lesson plan generated", data={"length": len(result.text)})
    return {"success": True, "lessonPlan": result.text, "lesson": lesson}


@app.post("/api/templates/slides/generate")
async def generate_slide(
    body: SlideGenerateRequest,
    user: dict = Depends(get_current_user),
    tokens: TokenTracker = Depends(get_token_tracker),
    tracker: ActivityTracker = Depends(get_activity_tracker),
    lessons: LessonService = Depends(get_lesson_service),
    content_factory=Depends(get_content_factory),
):
    """Generate one slide's HTML; images go to temporary storage under the session."""
    session_id = body.sessionId or TemporaryImageService.generate_session_id()
    service = content_factory(body.provider)
    result = await service.generate_slide_content(
        body.title, body.description, body.topic, body.ageGroup,
        body.slideNumber, body.totalSlides, body.type,
        session_id=session_id, user_id=user["id"],
    )
    track_ai_usage(tokens, tracker, user, f"slide_{service.provider}", result, {"slideNumber": body.slideNumber})

    slide = None
    if body.lessonId:
        slide = lessons.add_slide(body.lessonId, user["id"], {
            "title": body.title,
            "description": body.description,
            "type": body.type,
            "html_content": result.text,
            "status": "ready",
        }, position=body.slideNumber)
        tracker.track_slide_generated(user["id"], slide["id"], body.lessonId, body.type,
                                      body.title, body.slideNumber)

    return {
        "success": True,
        "slide": {
            "id": slide["id"] if slide else None,
            "title": body.title,
            "htmlContent": result.text,
            "slideNumber": body.slideNumber,
            "status": "ready",
        },
        "sessionId": session_id,
    }


@app.post("/api/generation/slides/sequential")
async def generate_slides_sequentially(
    body: SequentialSlidesRequest,
    user: dict = Depends(get_current_user),
    tokens: TokenTracker = Depends(get_token_tracker),
    tracker: ActivityTracker = Depends(get_activity_tracker),
    lessons: LessonService = Depends(get_lesson_service),
    sequential_factory=Depends(get_sequential_factory),
):
    """Generate every described slide in order; with lessonId each slide is appended as it lands."""
    descriptions = parse_slide_descriptions(body.slideDescriptions)
    if body.lessonId:
        lessons.require_lesson(body.lessonId, user["id"])
    session_id = body.sessionId or TemporaryImageService.generate_session_id()
    logger.section("SEQUENTIAL SLIDES", {"slides": len(descriptions), "topic": body.topic, "provider": body.provider})

    async def save_slide(slide: GeneratedSlide):
        if not body.lessonId:
            return
        saved = lessons.add_slide(body.lessonId, user["id"], {
            "title": slide.title,
            "description": slide.description,
            "type": slide.type,
            "html_content": slide.html_content,
            "status": "ready" if slide.status == "completed" else "draft",
        })
        tracker.track_slide_generated(user["id"], saved["id"], body.lessonId, slide.type,
                                      slide.title, slide.slide_number)

    generator = sequential_factory(body.provider)
    result = await generator.generate_all_slides(descriptions, body.topic, body.age,
                                                 on_slide_ready=save_slide, session_id=session_id,
                                                 user_id=user["id"])
    for ai_result in result.results:
        track_ai_usage(tokens, tracker, user, f"slide_{generator.content_service.provider}", ai_result,
                       {"sequential": True})

    return {
        "success": True,
        "message": f"Generated {result.completed_slides} slides sequentially",
        "slides": [slide.to_dict() for slide in result.slides],
        "lesson": lessons.get_lesson_with_slides(body.lessonId, user["id"]) if body.lessonId else None,
        "sessionId": session_id,
        "finalProgress": [p.to_dict() for p in result.progress],
        "statistics": result.statistics(),
    }


@app.get("/api/generation/slides/sequential")
async def sequential_generation_status():
    return {
        "success": True,
        "service": "Sequential Slide Generation API",
        "status": "available",
        "features": SEQUENTIAL_FEATURES,
    }


@app.post("/api/generation/config", status_code=201)
async def save_generation_config(body: Dict[str, Any], user: dict = Depends(get_current_user),
                                 configs: GenerationConfigService = Depends(get_config_service)):
    config = configs.save_config(user["id"], body)
    return {"success": True, "config": config, "message": "Configuration saved successfully"}


@app.get("/api/generation/config")
async def list_generation_configs(ageGroupId: Optional[str] = None, templatesOnly: bool = False,
                                  user: dict = Depends(get_current_user),
                                  configs: GenerationConfigService = Depends(get_config_service)):
    return {"success": True, "configs": configs.list_configs(user["id"], ageGroupId, templatesOnly)}


@app.delete("/api/generation/config")
async def delete_generation_config(id: Optional[str] = None, user: dict = Depends(get_current_user),
                                   configs: GenerationConfigService = Depends(get_config_service)):
    configs.delete_config(user["id"], id)
    return {"success": True, "message": "Configuration deleted successfully"}


@app.post("/api/templates/edit-plan")
async def edit_plan(
    body: EditPlanRequest,
    user: dict = Depends(get_current_user),
    tokens: TokenTracker = Depends(get_token_tracker),
    tracker: ActivityTracker = Depends(get_activity_tracker),
    content_factory=Depends(get_content_factory),
):
    if not body.originalPlan.strip():
        raise ValidationError("Original plan is required")
    if not body.comments:
        raise ValidationError("At least one comment is required")

    service = content_factory(body.provider)
    result = await service.generate_edited_plan(body.originalPlan, comments_to_text(body.comments),
                                                body.topic, body.ageGroup, body.language)
    track_ai_usage(tokens, tracker, user, f"edit_plan_{service.provider}", result)
    return {
        "success": True,
        "editedPlan": result.text,
        "metadata": {"originalLength": len(body.originalPlan), "editedLength": len(result.text),
                     "changesCount": len(body.comments)},
    }


@app.post("/api/images")
async def generate_image(body: ImageRequest, user: dict = Depends(get_current_user),
                         images: TogetherImageService = Depends(get_image_service)):
    result = await images.generate(body.prompt, width=body.width, height=body.height)
    if not result.success:
        status = result.status_code if result.status_code and result.status_code >= 400 else 500
        return JSONResponse(status_code=status, content=result.to_dict(body.width, body.height))
    return result.to_dict(body.width, body.height)


@app.post("/api/images/migrate")
async def migrate_images(
    body: ImageMigrationRequest,
    user: dict = Depends(get_current_user),
    lessons: LessonService = Depends(get_lesson_service),
    temp_images: TemporaryImageService = Depends(get_temp_images),
):
    """Move a session's temporary images into the lesson and rewrite slide HTML."""
    lessons.require_lesson(body.lessonId, user["id"])
    stored = temp_images.find_session_images(user["id"], body.sessionId)
    results = temp_images.migrate_to_permanent(stored, body.lessonId)

    updated = 0
    if any(r.success for r in results):
        for slide in lessons.get_slides(body.lessonId):
            html = slide.get("html_content") or ""
            rewritten = TemporaryImageService.rewrite_html_urls(html, results)
            if rewritten != html:
                lessons.update_slide(body.lessonId, user["id"], slide["id"], {"html_content": rewritten})
                updated += 1

    return {
        "success": True,
        "migrated": sum(1 for r in results if r.success),
        "failed": sum(1 for r in results if not r.success),
        "urlMap": build_url_map(results),
        "slidesUpdated": updated,
    }


@app.delete("/api/images/session/{session_id}")
async def cleanup_image_session(session_id: str, user: dict = Depends(get_current_user),
                                temp_images: TemporaryImageService = Depends(get_temp_images)):
    return {"success": True, "removed": temp_images.cleanup_session(user["id"], session_id)}


# ---------- Slide editing ----------

@app.post("/api/slides/edit-from-comments")
async def edit_slide_from_comments(
    body: CommentEditRequest,
    user: dict = Depends(get_current_user),
    editor: GeminiSlideEditingService = Depends(get_slide_editing_service),
):
    if not body.comments:
        raise ValidationError("At least one comment is required")
    if not body.context.get("ageGroup") or not body.context.get("topic"):
        raise ValidationError("Context with ageGroup and topic is required")

    comments = [SlideComment(comment=c.get("comment", ""), section_type=c.get("sectionType", "general"),
                             priority=c.get("priority", "medium")) for c in body.comments]
    result = await editor.edit_slide_from_comments(body.slide, comments, body.context["ageGroup"],
                                                   body.context["topic"], session_id=body.sessionId,
                                                   user_id=user["id"])
    return {"success": True, **result.to_dict()}


@app.post("/api/slides/{slide_id}/edit")
async def edit_slide(
    slide_id: str,
    body: SimpleEditRequest,
    user: dict = Depends(get_current_user),
    editor: GeminiSimpleEditService = Depends(get_simple_edit_service),
    batches: BatchSlideEditingService = Depends(get_batch_service),
):
    if not body.instruction or not body.slideContent:
        raise HTTPException(status_code=400, detail="Missing required fields: instruction and slideContent")
    if body.batchId:
        batches.get_session(body.batchId, user["id"])

    started = time.time()
    edited = await editor.edit_slide(body.instruction, body.slideContent, body.topic, body.age)
    editing_time = int((time.time() - started) * 1000)

    if body.batchId:
        batches.record_slide_result(body.batchId, user["id"], BatchEditResult(
            slide_id=slide_id, slide_index=body.slideIndex or 1, success=True,
            editing_time_ms=editing_time, edited_content=edited,
        ))

    return {
        "success": True,
        "editedContent": edited,
        "thumbnailUrl": None,
        "editingTime": editing_time,
        "slideId": slide_id,
        "batchId": body.batchId,
    }


@app.post("/api/lessons/{lesson_id}/chat")
async def lesson_chat(
    lesson_id: str,
    body: LessonChatRequest,
    user: dict = Depends(get_current_user),
    tokens: TokenTracker = Depends(get_token_tracker),
    tracker: ActivityTracker = Depends(get_activity_tracker),
    lessons: LessonService = Depends(get_lesson_service),
    commands: SlideCommandService = Depends(get_slide_command_service),
):
    """Chat command against a lesson; applyActions writes `update_slide` actions back."""
    lesson = lessons.get_lesson_with_slides(lesson_id, user["id"])
    if lesson is None:
        raise HTTPException(status_code=404, detail="Lesson not found")

    result = await commands.process_command(body.message, lesson, body.selectedSlideId)
    for ai_result in commands.usage:
        track_ai_usage(tokens, tracker, user, "lesson_chat", ai_result, {"lessonId": lesson_id})

    applied = []
    if body.applyActions:
        for slide_id, changes in actions_to_slide_updates(result["response"]["actions"], lesson["slides"]):
            applied.append(lessons.update_slide(lesson_id, user["id"], slide_id, changes))

    return {"success": True, "lessonId": lesson_id, **result, "appliedSlides": applied}


# ---------- Batch editing ----------

@app.post("/api/lessons/{lesson_id}/batch-edit")
async def start_batch_edit(
    lesson_id: str,
    body: BatchEditRequest,
    background_tasks: BackgroundTasks,
    user: dict = Depends(get_current_user),
    lessons: LessonService = Depends(get_lesson_service),
    batches: BatchSlideEditingService = Depends(get_batch_service),
    editor: GeminiSimpleEditService = Depends(get_simple_edit_service),
):
    """Start a sequential batch edit; poll GET /api/batch-edit/{batch_id} for progress."""
    lesson = lessons.get_lesson_with_slides(lesson_id, user["id"])
    if lesson is None:
        raise HTTPException(status_code=404, detail="Lesson not found")

    slides = lesson["slides"]
    numbers = determine_affected_slides(body.mode, total_slides=len(slides),
                                        slide_numbers=body.slideNumbers, slide_range=body.slideRange)
    session = batches.create_batch_session(user["id"], lesson_id, body.instruction, numbers,
                                           body.topic, body.age)

    async def save_slide(slide: Dict[str, Any], edited_html: str):
        lessons.update_slide(lesson_id, user["id"], slide["id"], {"html_content": edited_html})

    background_tasks.add_task(batches.run_batch, session.batch_id, user["id"], slides, editor, save_slide)
    return {"success": True, "batchId": session.batch_id, "progress": session.progress()}


@app.get("/api/batch-edit/{batch_id}")
async def batch_progress(batch_id: str, user: dict = Depends(get_current_user),
                         batches: BatchSlideEditingService = Depends(get_batch_service)):
    return batches.get_progress(batch_id, user["id"])


@app.delete("/api/batch-edit/{batch_id}")
async def cancel_batch(batch_id: str, user: dict = Depends(get_current_user),
                       batches: BatchSlideEditingService = Depends(get_batch_service)):
    session = batches.cancel(batch_id, user["id"])
    return {"success": True, "batchId": batch_id, "status": session.status}


@app.post("/api/lessons/{lesson_id}/batch-edit/optimized")
async def optimized_batch_edit(
    lesson_id: str,
    body: OptimizedBatchRequest,
    user: dict = Depends(get_current_user),
    lessons: LessonService = Depends(get_lesson_service),
    optimized: OptimizedBatchEditService = Depends(get_optimized_batch_service),
):
    lesson = lessons.get_lesson_with_slides(lesson_id, user["id"])
    if lesson is None:
        raise HTTPException(status_code=404, detail="Lesson not found")

    slides = lesson["slides"]
    progress = await optimized.execute_plan(slides, body.editPlan, body.topic, body.age)

    by_number = {s["slide_number"]: s for s in slides}
    for key, html in progress.results.items():
        slide = by_number.get(slide_number_from_key(key))
        if slide is not None:
            lessons.update_slide(lesson_id, user["id"], slide["id"], {"html_content": html})

    return {"success": not progress.errors, **progress.to_dict()}


# ---------- Context compression ----------

@app.post("/api/compress-context")
async def compress_context(body: CompressRequest, user: dict = Depends(get_current_user),
                           compressor: ContextCompressionService = Depends(get_compression_service)):
    if not body.context:
        raise HTTPException(status_code=400, detail="Context is required")

    if estimate_tokens(body.context) <= COMPRESSION_THRESHOLD:
        return {"success": True, "compressed": False, "context": body.context,
                "metrics": calculate_metrics(body.context, body.context)}

    if body.adaptive:
        result = await compressor.adaptive_compression(body.context)
    else:
        result = await compressor.compress(body.context, CompressionOptions.from_dict(body.options))
    return {"success": True, "compressed": True, "context": result["compressed"], "metrics": result["metrics"]}


# ---------- Worksheets ----------

@app.post("/api/worksheet/generate")
async def generate_worksheet(
    body: Dict[str, Any],
    user: dict = Depends(get_current_user),
    limits: GenerationLimitService = Depends(get_limit_service),
    tokens: TokenTracker = Depends(get_token_tracker),
    tracker: ActivityTracker = Depends(get_activity_tracker),
    worksheets: GeminiWorksheetGenerationService = Depends(get_worksheet_service),
):
    logger.section("WORKSHEET GENERATION", {"topic": body.get("topic"), "age": body.get("ageGroup")})
    limits.enforce(user["id"])

    worksheet = await worksheets.generate(body)
    track_ai_usage(tokens, tracker, user, "worksheet_generation", worksheets.last_usage, {"topic": body.get("topic")})
    limits.increment_generation_count(user["id"])

    canvas = WorksheetParser().parse_worksheet(worksheet)
    validation = WorksheetParser.validate_worksheet(canvas)
    if validation["errors"]:
        logger.warning("Worksheet canvas has structural problems", data={"errors": validation["errors"]})

    metadata = worksheet["metadata"]
    tracker.track_worksheet_created(user["id"], None, "pdf", metadata["ageGroup"], metadata["topic"])
    logger.success("Worksheet generated", data={"pages": metadata["pageCount"]})
    return {"success": True, "worksheet": worksheet, "canvas": canvas, "validation": validation}


@app.post("/api/worksheet/generate-topic")
async def worksheet_topic(
    body: WorksheetTopicRequest,
    user: dict = Depends(get_current_user),
    worksheets: GeminiWorksheetGenerationService = Depends(get_worksheet_service),
):
    if not body.message.strip():
        raise ValidationError("Message is required")
    result = await worksheets.generate_topic_chat(body.message, body.conversationHistory,
                                                  body.ageGroup, body.contentMode)
    return {"success": True, **result}


@app.post("/api/worksheet/generate-images")
async def worksheet_images(
    body: WorksheetImagesRequest,
    user: dict = Depends(get_current_user),
    images: WorksheetImageService = Depends(get_worksheet_image_service),
):
    return await images.generate_images(body.worksheet)


# ---------- Payments ----------

@app.post("/api/payment/create")
async def create_payment(body: PaymentCreateRequest, user: dict = Depends(get_current_user),
                         payments: PaymentService = Depends(get_payment_service)):
    kwargs = {"currency": body.currency, "language": body.language}
    if body.productName:
        kwargs["product_name"] = body.productName
    return {"success": True, **payments.create_payment(user, body.amount, **kwargs)}


@app.post("/api/payment/wayforpay/webhook")
async def wayforpay_webhook(request: Request, payments: PaymentService = Depends(get_payment_service)):
    """Public WayForPay service-url callback; authenticity comes from the signature."""
    payload = parse_webhook_body(await request.body())
    logger.info("💳 WayForPay webhook", data={"orderReference": payload.get("orderReference"),
                                              "transactionStatus": payload.get("transactionStatus")})
    return payments.handle_webhook(payload)


# ---------- Admin ----------

@app.get("/api/admin/users")
async def admin_users(
    search: Optional[str] = None,
    role: str = "all",
    limit: int = 20,
    offset: int = 0,
    admin: dict = Depends(get_admin_user),
    service: AdminService = Depends(get_admin_service),
):
    return service.list_users(search, role, limit, offset)


@app.get("/api/admin/users/{user_id}")
async def admin_user_detail(user_id: str, admin: dict = Depends(get_admin_user),
                            service: AdminService = Depends(get_admin_service)):
    return service.get_user_detail(user_id)


@app.put("/api/admin/users/{user_id}")
async def admin_update_user(user_id: str, body: UserUpdate, admin: dict = Depends(get_admin_user),
                            service: AdminService = Depends(get_admin_service)):
    return {"success": True, "user": service.update_user(user_id, body.model_dump(exclude_none=True))}


@app.post("/api/admin/users/{user_id}/block")
async def admin_block_user(user_id: str, body: BlockRequest, admin: dict = Depends(get_admin_user),
                           service: AdminService = Depends(get_admin_service)):
    return {"success": True, **service.toggle_user_block(user_id, body.block, admin_id=admin["id"])}


@app.put("/api/admin/users/{user_id}/generation-limit")
async def admin_generation_limit(user_id: str, body: GenerationLimitUpdate,
                                 admin: dict = Depends(get_admin_user),
                                 service: AdminService = Depends(get_admin_service)):
    require_super_admin(admin)
    return {"success": True, "limit": service.update_generation_limit(user_id, body.limit)}


@app.get("/api/admin/activity")
async def admin_activity(
    user_id: Optional[str] = None,
    action: Optional[str] = None,
    entity_type: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    admin: dict = Depends(get_admin_user),
    service: AdminService = Depends(get_admin_service),
):
    return service.get_activity_logs({
        "user_id": user_id, "action": action, "entity_type": entity_type,
        "date_from": date_from, "date_to": date_to, "limit": limit, "offset": offset,
    })


@app.get("/api/admin/activity/stats")
async def admin_activity_stats(days: int = 30, admin: dict = Depends(get_admin_user),
                               service: AdminService = Depends(get_admin_service)):
    return {
        "byAction": service.get_activity_stats(days),
        "timeline": service.get_activity_timeline(days),
        "mostActiveUsers": service.get_most_active_users(),
    }


@app.delete("/api/admin/activity/cleanup")
async def admin_activity_cleanup(days_to_keep: int = 90, admin: dict = Depends(get_admin_user),
                                 service: AdminService = Depends(get_admin_service)):
    require_super_admin(admin)
    return {"success": True, "deleted": service.cleanup_old_logs(days_to_keep)}


@app.get("/api/admin/analytics/engagement")
async def admin_engagement(admin: dict = Depends(get_admin_user),
                           service: AdminService = Depends(get_admin_service)):
    return service.get_engagement_metrics()


@app.get("/api/admin/finance/revenue")
async def admin_revenue(admin: dict = Depends(get_admin_user),
                        service: AdminService = Depends(get_admin_service)):
    return service.get_revenue_metrics()


@app.get("/api/admin/dashboard")
async def admin_dashboard(admin: dict = Depends(get_admin_user),
                          service: AdminService = Depends(get_admin_service),
                          tokens: TokenTracker = Depends(get_token_tracker)):
    return {**service.get_dashboard_metrics(), "tokens": tokens.get_platform_token_stats()}


@app.get("/api/admin/lessons")
async def admin_lessons(
    search: Optional[str] = None,
    user_id: Optional[str] = None,
    status: Optional[str] = None,
    subject: Optional[str] = None,
    age_group: Optional[str] = None,
    difficulty: Optional[str] = None,
    is_public: Optional[bool] = None,
    sort_by: str = "created_at",
    sort_order: str = "desc",
    limit: int = 20,
    offset: int = 0,
    admin: dict = Depends(get_admin_user),
    service: AdminService = Depends(get_admin_service),
):
    return service.list_lessons({
        "search": search, "user_id": user_id, "status": status, "subject": subject,
        "age_group": age_group, "difficulty": difficulty, "is_public": is_public,
        "sort_by": sort_by, "sort_order": sort_order, "limit": limit, "offset": offset,
    })


@app.get("/api/admin/lessons/stats")
async def admin_lessons_stats(admin: dict = Depends(get_admin_user),
                              service: AdminService = Depends(get_admin_service)):
    return service.get_lessons_stats()


@app.post("/api/admin/lessons/bulk-delete")
async def admin_bulk_delete(body: BulkDeleteRequest, admin: dict = Depends(get_admin_user),
                            service: AdminService = Depends(get_admin_service)):
    deleted = service.bulk_delete_lessons(body.lessonIds)
    return {"success": True, "message": f"{deleted} lessons deleted successfully"}


@app.post("/api/admin/lessons/{lesson_id}/archive")
async def admin_archive_lesson(lesson_id: str, admin: dict = Depends(get_admin_user),
                               service: AdminService = Depends(get_admin_service)):
    return {"success": True, "lesson": service.archive_lesson(lesson_id)}


@app.post("/api/admin/lessons/{lesson_id}/publish")
async def admin_publish_lesson(lesson_id: str, admin: dict = Depends(get_admin_user),
                               service: AdminService = Depends(get_admin_service)):
    return {"success": True, "lesson": service.publish_lesson(lesson_id)}


@app.delete("/api/admin/lessons/{lesson_id}")
async def admin_delete_lesson(lesson_id: str, admin: dict = Depends(get_admin_user),
                              service: AdminService = Depends(get_admin_service)):
    service.delete_lesson(lesson_id)
    return {"success": True, "message": "Lesson deleted successfully"}


# ==================== Lifecycle ====================

@app.on_event("startup")
async def startup_event():
    """Startup event - start the batch session reaper."""
    global _batch_reaper
    _batch_reaper = BatchSessionReaper(get_batch_service(), ttl_minutes=get_settings().batch_session_ttl_minutes)
    _batch_reaper.start()
    logger.success("Batch session reaper started")


@app.on_event("shutdown")
async def shutdown_event():
    """Shutdown event - stop the batch session reaper."""
    global _batch_reaper
    if _batch_reaper:
        await _batch_reaper.stop()
        _batch_reaper = None
        logger.info("🛑 Batch session reaper stopped")


if __name__ == "__main__":
    import uvicorn

    def handle_exit(*args):
        """Handle graceful shutdown."""
        logger.section("SERVER SHUTDOWN", {"reason": "signal received"})
        sys.exit(0)

    signal.signal(signal.SIGINT, handle_exit)
    signal.signal(signal.SIGTERM, handle_exit)

    try:
        uvicorn.run(app, host="0.0.0.0", port=8000)
    except KeyboardInterrupt:
        logger.info("🛑 Server stopped.")
        sys.exit(0)
