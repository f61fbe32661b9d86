# app/services/orchestrator.py
"""
Credit-metered affirmation flows.

Each flow receives the caller's Session and returns an Outcome: the flow's
result plus a SessionDelta describing what changed for the session (the
new credit balance when credits moved). Nothing here reads request-global
state.
"""
import logging
import uuid
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from app.core.errors import (
    AppError,
    GenerationInProgress,
    InsufficientCredits,
    PersistenceFailure,
    ProviderRejected,
    RequestSuperseded,
    ImageAlreadyExists,
    VoiceNotConfigured,
)
from app.core.tasks import BackgroundTasks, background_tasks
from app.models.affirmation import (
    AddImageResponse,
    Affirmation,
    CostBreakdown,
    CreateAffirmationRequest,
    CreateAffirmationResponse,
    GenerateImageRequest,
    GenerateImageResponse,
    GenerateTextResponse,
    PlaylistEntry,
    PlaylistResponse,
    resolve_category,
)
from app.models.user import Session, UserProfile
from app.services.affirmation_store import AffirmationStore, affirmation_store
from app.services.audio_cache import AudioCache, audio_cache
from app.services.credit_service import (
    BASE_AFFIRMATION_COST,
    PERSONAL_IMAGE_COST,
    VOICE_CLONE_COST,
    calculate_credit_cost,
    effective_selection,
    is_low_on_credits,
)
from app.services.image_service import ImageGenerator, image_generator
from app.services.ledger_service import CreditLedger, credit_ledger
from app.services.openai_service import generate_affirmation
from app.services.progress_tracker import (
    GenerationState,
    ProgressTracker,
    TERMINAL_STATES,
    progress_tracker,
)
from app.services.storage_service import RehostResult, rehost_image
from app.services.voice_service import DEFAULT_VOICE_ID, is_preset_voice, synthesize_speech

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionDelta:
    credits: Optional[int] = None

    def apply(self, session: Session) -> Session:
        if self.credits is None:
            return session
        return replace(session, profile=session.profile.model_copy(update={"credits": self.credits}))


@dataclass(frozen=True)
class Outcome:
    result: Any
    delta: SessionDelta = SessionDelta()


@dataclass(frozen=True)
class SpeechResult:
    """Either a cached URL or freshly synthesised audio, never both"""

    affirmation_id: Optional[str]
    voice_id: str
    audio_url: Optional[str] = None
    audio: Optional[bytes] = None
    credits_charged: int = 0

    @property
    def cached(self) -> bool:
        return self.audio_url is not None


@dataclass
class PendingImage:
    """A rehosted image whose write failed; ``charged`` once the surcharge is taken"""

    rehosted: RehostResult
    personal: bool
    charged: bool = False


class GenerationOrchestrator:
    def __init__(
        self,
        ledger: Optional[CreditLedger] = None,
        store: Optional[AffirmationStore] = None,
        audio: Optional[AudioCache] = None,
        tracker: Optional[ProgressTracker] = None,
        tasks: Optional[BackgroundTasks] = None,
        images: Optional[ImageGenerator] = None,
        text_generator: Callable[[str], Awaitable[str]] = generate_affirmation,
        speech_synthesizer: Callable[[str, str], Awaitable[bytes]] = synthesize_speech,
        image_rehoster: Callable[[str, str, str], Awaitable[RehostResult]] = rehost_image,
    ):
        self.ledger = ledger or credit_ledger
        self.store = store or affirmation_store
        self.audio = audio or audio_cache
        self.tracker = tracker or progress_tracker
        self.tasks = tasks or background_tasks
        self.images = images or image_generator
        self.text_generator = text_generator
        self.speech_synthesizer = speech_synthesizer
        self.image_rehoster = image_rehoster
        # Latest request per slot; an older request finding someone else here is stale
        self._slots: Dict[Tuple[str, ...], str] = {}
        # Provider output that could not be saved; a retry reuses it instead of regenerating
        self._pending_images: Dict[Tuple[str, str], PendingImage] = {}
        self._pending_audio: Dict[Tuple[str, str, str], bytes] = {}

    # --- helpers ---

    def _claim_slot(self, slot: Tuple[str, ...], token: str) -> None:
        previous = self._slots.get(slot)
        if previous and previous != token:
            logger.info(f"Request {token} supersedes {previous} for {slot}")
        self._slots[slot] = token

    def _owns_slot(self, slot: Tuple[str, ...], token: str) -> bool:
        return self._slots.get(slot) == token

    def _release_slot(self, slot: Tuple[str, ...], token: str) -> None:
        if self._slots.get(slot) == token:
            del self._slots[slot]

    async def _refund(self, user_id: str, amount: int, reason: str) -> None:
        """Compensate a reservation; a failed refund is logged by the ledger"""
        if amount <= 0:
            return
        try:
            await self.ledger.refund(user_id, amount)
            logger.info(f"Refunded {amount} credits to {user_id}: {reason}")
        except PersistenceFailure:
            # The caller is already failing with the original error
            logger.error(f"Refund of {amount} credits to {user_id} after '{reason}' did not complete")

    async def _fail(self, user_id: str, request_id: str, reason: str) -> None:
        state = await self.tracker.get_state(user_id, request_id)
        if state is not None and state not in TERMINAL_STATES:
            await self.tracker.fail_task(user_id, request_id, reason)

    # --- new affirmation ---

    async def create_affirmation(self, session: Session, request: CreateAffirmationRequest) -> Outcome:
        """Charge, generate, save and (optionally) schedule the image.

        The reservation is taken before the text call and refunded when the
        text call fails or a newer request for the same category replaces
        this one. A retry with the same ``request_id`` never charges again.
        """
        user_id = session.user_id
        request_id = request.request_id or str(uuid.uuid4())

        previous = await self.tracker.get_result(user_id, request_id)
        if previous is not None:
            logger.info(f"Replaying finished generation {request_id} for {user_id}")
            return Outcome(previous)

        parked = await self.tracker.resume_persisting(user_id, request_id)
        if parked is not None:
            return await self._save_parked(session, request_id, parked)

        state = await self.tracker.get_state(user_id, request_id)
        if state is not None and state not in TERMINAL_STATES:
            raise GenerationInProgress(detail=request_id)

        category = resolve_category(request.category_id, request.category_title)
        slot = (user_id, "category", category.id)

        await self.tracker.start_tracking(user_id, request_id)
        self._claim_slot(slot, request_id)
        try:
            # COST_CHECK
            await self.tracker.transition(user_id, request_id, GenerationState.COST_CHECK)
            profile = session.profile
            auto_image = profile.auto_generate_images
            selection = effective_selection(profile, request.use_personal_image, request.use_voice_clone)
            if not auto_image:
                # Charged later by the add-image flow
                selection = replace(selection, use_personal_image=False)
            cost = calculate_credit_cost(selection.use_personal_image, selection.use_voice_clone)

            # DEBITING
            await self.tracker.transition(user_id, request_id, GenerationState.DEBITING)
            balance = await self.ledger.reserve_and_debit(user_id, cost.total)

            # TEXT_GENERATING
            await self.tracker.transition(user_id, request_id, GenerationState.TEXT_GENERATING)
            try:
                text = await self.text_generator(category.title)
            except Exception as e:
                await self._refund(user_id, cost.total, f"text generation failed for {request_id}")
                await self._fail(user_id, request_id, getattr(e, "code", type(e).__name__))
                raise

            if not self._owns_slot(slot, request_id):
                await self._refund(user_id, cost.total, f"request {request_id} superseded")
                await self._fail(user_id, request_id, RequestSuperseded.code)
                raise RequestSuperseded(detail=request_id)

            # PERSISTING
            await self.tracker.transition(user_id, request_id, GenerationState.PERSISTING)
            context = {
                "category_id": category.id,
                "category_title": category.title,
                "voice_clone_paid": selection.use_voice_clone,
                "use_personal_image": selection.use_personal_image,
                "auto_image": auto_image,
                "cost": cost.as_dict(),
            }
            return await self._persist(session, request_id, text, context, balance)
        except AppError as e:
            await self._fail(user_id, request_id, e.code)
            raise
        except Exception as e:
            await self._fail(user_id, request_id, type(e).__name__)
            raise
        finally:
            self._release_slot(slot, request_id)

    async def _persist(self, session: Session, request_id: str, text: str,
                       context: Dict[str, Any], balance: int) -> Outcome:
        user_id = session.user_id
        try:
            affirmation = await self.store.create(
                user_id,
                text,
                context["category_id"],
                context["category_title"],
                voice_clone_paid=context["voice_clone_paid"],
            )
        except PersistenceFailure as e:
            # The charge stands; a retry with the same request id only writes
            await self.tracker.park_text(user_id, request_id, text, context)
            await self._fail(user_id, request_id, e.code)
            raise PersistenceFailure(
                "Your affirmation was generated but could not be saved. Retry to save it.",
                detail=e.detail,
                partial_result={"request_id": request_id, "affirmation": text},
            )
        except Exception as e:
            await self.tracker.park_text(user_id, request_id, text, context)
            await self._fail(user_id, request_id, type(e).__name__)
            raise

        if context["auto_image"]:
            self.tasks.spawn(
                self._auto_image(session.profile, affirmation, context["use_personal_image"]),
                name=f"auto-image-{affirmation.id}",
            )

        response = CreateAffirmationResponse(
            request_id=request_id,
            affirmation=affirmation,
            cost=CostBreakdown(**context["cost"]),
            credits_remaining=balance,
            low_on_credits=is_low_on_credits(balance),
            image_pending=context["auto_image"],
        )
        await self.tracker.complete_task(user_id, request_id, response, affirmation_id=affirmation.id)
        return Outcome(response, SessionDelta(credits=balance))

    async def _save_parked(self, session: Session, request_id: str, parked: Dict[str, Any]) -> Outcome:
        user_id = session.user_id
        logger.info(f"Saving parked affirmation text for {request_id}")
        text = parked.pop("text")
        try:
            balance = await self.ledger.get_balance(user_id)
        except Exception as e:
            # Back to FAILED with the text still parked, so the next retry resumes again
            await self.tracker.park_text(user_id, request_id, text, parked)
            await self._fail(user_id, request_id, getattr(e, "code", type(e).__name__))
            raise
        return await self._persist(session, request_id, text, parked, balance)

    async def _auto_image(self, profile: UserProfile, affirmation: Affirmation, personal_paid: bool) -> None:
        """Detached image stage of a new affirmation; failures only reach the log"""
        user_id = profile.id
        references = [profile.portrait_image_url, profile.full_body_image_url] if personal_paid else None
        try:
            result = await self.images.generate(
                affirmation.affirmation,
                affirmation.category_title,
                aspect_ratio=profile.default_aspect_ratio,
                reference_images=references,
                demographics=profile.demographics,
            )
            rehosted = await self.image_rehoster(result.url, user_id, affirmation.id)
            await self.store.set_image(user_id, affirmation.id, rehosted.url)
            logger.info(f"Attached image to affirmation {affirmation.id} (rehosted={rehosted.rehosted})")
        except Exception:
            if personal_paid:
                await self._refund(user_id, PERSONAL_IMAGE_COST, f"auto image failed for {affirmation.id}")
            raise

    # --- add image to an existing affirmation ---

    def _unsaved_image(self, affirmation_id: str, pending: PendingImage, error: PersistenceFailure) -> PersistenceFailure:
        return PersistenceFailure(
            "Your image was generated but could not be saved. Retry to save it.",
            detail=error.detail,
            partial_result={"affirmation_id": affirmation_id, "image_url": pending.rehosted.url},
        )

    async def add_image(self, session: Session, affirmation_id: str, use_personal_image: bool = False) -> Outcome:
        """Generate the missing image; the personal surcharge is only taken on success.

        An image that was generated but could not be saved is kept, and a
        retry writes that image instead of calling the provider again. The
        surcharge is taken at most once across such retries.
        """
        user_id = session.user_id
        profile = session.profile
        key = (user_id, affirmation_id)

        affirmation = await self.store.get(user_id, affirmation_id)
        if affirmation.image_url:
            self._pending_images.pop(key, None)
            raise ImageAlreadyExists(detail=affirmation_id)

        pending = self._pending_images.get(key)
        personal = pending.personal if pending else bool(use_personal_image and profile.has_personal_images)
        surcharge = PERSONAL_IMAGE_COST if personal else 0

        slot = (user_id, "image", affirmation_id)
        token = str(uuid.uuid4())
        self._claim_slot(slot, token)
        try:
            if pending is None:
                if surcharge:
                    available = await self.ledger.get_balance(user_id)
                    if available < surcharge:
                        raise InsufficientCredits(required=surcharge, available=available)

                result = await self.images.generate(
                    affirmation.affirmation,
                    affirmation.category_title,
                    aspect_ratio=profile.default_aspect_ratio,
                    reference_images=[profile.portrait_image_url, profile.full_body_image_url] if personal else None,
                    demographics=profile.demographics,
                )

                if not self._owns_slot(slot, token):
                    raise RequestSuperseded(detail=affirmation_id)

                rehosted = await self.image_rehoster(result.url, user_id, affirmation_id)
                pending = self._pending_images[key] = PendingImage(rehosted=rehosted, personal=personal)
            else:
                logger.info(f"Saving previously generated image for {affirmation_id}")

            try:
                if pending.charged:
                    balance = await self.ledger.get_balance(user_id)
                else:
                    balance = await self.ledger.reserve_and_debit(user_id, surcharge)
                    pending.charged = True
            except PersistenceFailure as e:
                raise self._unsaved_image(affirmation_id, pending, e)

            try:
                await self.store.set_image(user_id, affirmation_id, pending.rehosted.url)
            except PersistenceFailure as e:
                # The charge stands; the retry only writes
                raise self._unsaved_image(affirmation_id, pending, e)
            except AppError:
                self._pending_images.pop(key, None)
                await self._refund(user_id, surcharge, f"image write failed for {affirmation_id}")
                raise
            self._pending_images.pop(key, None)
        finally:
            self._release_slot(slot, token)

        response = AddImageResponse(
            affirmation_id=affirmation_id,
            image_url=pending.rehosted.url,
            rehosted=pending.rehosted.rehosted,
            credits_charged=surcharge,
            credits_remaining=balance,
        )
        return Outcome(response, SessionDelta(credits=balance))

    # --- speak ---

    def resolve_voice(self, profile: UserProfile, voice_id: Optional[str] = None,
                      use_my_voice: bool = False) -> Tuple[str, bool]:
        """Return (voice id, is the user's own clone)"""
        if use_my_voice:
            if not profile.voice_clone_id:
                raise VoiceNotConfigured()
            return profile.voice_clone_id, True

        voice = voice_id or DEFAULT_VOICE_ID
        if profile.voice_clone_id and voice == profile.voice_clone_id:
            return voice, True
        if not is_preset_voice(voice):
            raise ProviderRejected("Please choose one of the available voices.", detail=voice)
        return voice, False

    async def speak(self, session: Session, affirmation_id: str, voice_id: Optional[str] = None,
                    use_my_voice: bool = False) -> Outcome:
        """Play an affirmation, from the audio cache when possible.

        Fresh audio is returned straight away and cached in the background.
        The personal-voice surcharge is charged once per affirmation, after
        a successful synthesis. Audio whose charge could not be recorded is
        kept for the retry.
        """
        user_id = session.user_id
        voice, personal = self.resolve_voice(session.profile, voice_id, use_my_voice)
        key = (user_id, affirmation_id, voice)

        cached_url = await self.audio.get(user_id, affirmation_id, voice)
        if cached_url:
            logger.info(f"Audio cache hit for {affirmation_id}/{voice}")
            self._pending_audio.pop(key, None)
            return Outcome(SpeechResult(affirmation_id=affirmation_id, voice_id=voice, audio_url=cached_url))

        affirmation = await self.store.get(user_id, affirmation_id)
        surcharge = VOICE_CLONE_COST if personal and not affirmation.voice_clone_paid else 0

        audio = self._pending_audio.get(key)
        if audio is None:
            if surcharge:
                available = await self.ledger.get_balance(user_id)
                if available < surcharge:
                    raise InsufficientCredits(required=surcharge, available=available)
            audio = await self.speech_synthesizer(affirmation.affirmation, voice)
        else:
            logger.info(f"Reusing synthesised audio for {affirmation_id}/{voice}")

        delta = SessionDelta()
        charged = 0
        if surcharge:
            self._pending_audio[key] = audio
            try:
                # Only the request that flips the flag pays
                if await self.store.set_voice_clone_paid(user_id, affirmation_id, True):
                    try:
                        balance = await self.ledger.reserve_and_debit(user_id, surcharge)
                    except AppError:
                        await self.store.set_voice_clone_paid(user_id, affirmation_id, False)
                        raise
                    charged = surcharge
                    delta = SessionDelta(credits=balance)
            except PersistenceFailure as e:
                raise PersistenceFailure(
                    "Your audio was created but the charge could not be recorded. Retry to play it.",
                    detail=e.detail,
                    partial_result={"affirmation_id": affirmation_id, "voice_id": voice},
                )
        self._pending_audio.pop(key, None)

        self.tasks.spawn(
            self.audio.store_and_put(user_id, affirmation_id, voice, audio),
            name=f"cache-audio-{affirmation_id}-{voice}",
        )
        return Outcome(
            SpeechResult(affirmation_id=affirmation_id, voice_id=voice, audio=audio, credits_charged=charged),
            delta,
        )

    # --- standalone provider calls ---

    async def generate_text(self, session: Session, category: str) -> Outcome:
        """One affirmation for a category, charged like a new affirmation"""
        user_id = session.user_id
        balance = await self.ledger.reserve_and_debit(user_id, BASE_AFFIRMATION_COST)
        try:
            text = await self.text_generator(category)
        except Exception:
            await self._refund(user_id, BASE_AFFIRMATION_COST, "standalone text generation failed")
            raise
        response = GenerateTextResponse(
            affirmation=text,
            credits_charged=BASE_AFFIRMATION_COST,
            credits_remaining=balance,
        )
        return Outcome(response, SessionDelta(credits=balance))

    async def generate_image(self, session: Session, request: GenerateImageRequest) -> Outcome:
        """An image for arbitrary text. Reference photos only ever come from the caller's profile."""
        user_id = session.user_id
        profile = session.profile
        personal = bool(request.use_user_images and profile.has_personal_images)
        if personal and request.user_images:
            named = (request.user_images.portrait, request.user_images.full_body)
            if named != (profile.portrait_image_url, profile.full_body_image_url):
                raise ProviderRejected("Reference photos must be the ones saved on your profile.")
        cost = calculate_credit_cost(use_personal_image=personal).total

        balance = await self.ledger.reserve_and_debit(user_id, cost)
        try:
            result = await self.images.generate(
                request.affirmation,
                request.category,
                aspect_ratio=request.aspect_ratio,
                reference_images=[profile.portrait_image_url, profile.full_body_image_url] if personal else None,
                demographics=request.demographics,
            )
        except Exception:
            await self._refund(user_id, cost, "standalone image generation failed")
            raise
        response = GenerateImageResponse(image_url=result.url, credits_charged=cost, credits_remaining=balance)
        return Outcome(response, SessionDelta(credits=balance))

    async def synthesize(self, session: Session, text: str, voice_id: Optional[str] = None) -> Outcome:
        """Speak arbitrary text in a preset voice (free) or the caller's own clone (surcharged)"""
        user_id = session.user_id
        voice, personal = self.resolve_voice(session.profile, voice_id)
        surcharge = VOICE_CLONE_COST if personal else 0

        delta = SessionDelta()
        if surcharge:
            delta = SessionDelta(credits=await self.ledger.reserve_and_debit(user_id, surcharge))
        try:
            audio = await self.speech_synthesizer(text, voice)
        except Exception:
            await self._refund(user_id, surcharge, "standalone speech synthesis failed")
            raise
        return Outcome(SpeechResult(affirmation_id=None, voice_id=voice, audio=audio, credits_charged=surcharge), delta)

    # --- favorites and playback ---

    async def toggle_favorite(self, session: Session, affirmation_id: str, favorite: bool) -> Outcome:
        affirmation = await self.store.set_favorite(session.user_id, affirmation_id, favorite)
        return Outcome(affirmation)

    async def playlist(self, session: Session, voice_id: Optional[str] = None,
                       use_my_voice: bool = False, favorites_only: bool = False) -> Outcome:
        """Cached audio for the whole library in one voice; misses carry no URL"""
        voice, _ = self.resolve_voice(session.profile, voice_id, use_my_voice)
        affirmations = await self.store.list_for_user(session.user_id, favorites_only=favorites_only)
        entries = [
            PlaylistEntry(
                affirmation_id=affirmation.id,
                text=affirmation.affirmation,
                audio_url=affirmation.audio_urls.get(voice),
            )
            for affirmation in affirmations
        ]
        return Outcome(PlaylistResponse(voice_id=voice, entries=entries))


orchestrator = GenerationOrchestrator()


def get_orchestrator() -> GenerationOrchestrator:
    """FastAPI dependency; overridden in tests"""
    return orchestrator
