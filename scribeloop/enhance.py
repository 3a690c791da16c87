"""
Enhancement orchestration: local rules or a cloud LLM, with fallback.

The cloud path is used only when the provider is enabled, a key is
stored and the document type is cloud-eligible. Any cloud failure
(timeout, API error, rate limit, empty output) silently falls back to
the local path. enhance() always returns text.

Usage:
    orchestrator = EnhancementOrchestrator(config.snapshot(), secrets, store)
    text = orchestrator.enhance("um so i think we should meet friday", DocumentType.EMAIL)
"""

import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Callable, Dict, Optional, Tuple, TYPE_CHECKING

from .commands import VoiceCommand, apply_command_format, recipient_greeting, with_recipient_greeting
from .config import CLOUD_ELIGIBLE_TYPES
from .errors import LLMError, LearningStoreError, SecretNotFound
from .formatting import apply_local_rules
from .llm import LLMClient, build_client
from .metrics import log_enhancement
from .secrets import SecretStore, api_key_name
from .types import ConfigSnapshot, DocumentType, EnhancedText, EnhancementDecision

if TYPE_CHECKING:
    from .learning import LearningStore
    from .metrics import MetricsWriter


TEXT_TOKEN = "{{TEXT}}"

SYSTEM_PROMPT = (
    "You are a dictation editor. Return only the edited text, with no "
    "preamble, quotes or commentary."
)

DEFAULT_PROMPTS: Dict[DocumentType, str] = {
    DocumentType.EMAIL: (
        "You are an expert email editor. Improve this dictated email:\n"
        "- Add proper greeting and closing if missing\n"
        "- Capitalize names\n"
        "- Format into clear paragraphs\n"
        "- Maintain the original intent\n"
        "- Keep it concise and professional\n\n"
        "Email:\n{{TEXT}}"
    ),
    DocumentType.MESSAGE: (
        "Improve this casual message:\n"
        "- Keep a casual, friendly tone\n"
        "- Use minimal punctuation\n"
        "- Keep it concise\n"
        "- Maintain the original meaning\n\n"
        "Message:\n{{TEXT}}"
    ),
    DocumentType.DOCUMENT: (
        "Improve this dictated document text:\n"
        "- Organize into paragraphs\n"
        "- Fix punctuation and capitalization\n"
        "- Add headings if appropriate\n"
        "- Use a formal tone\n\n"
        "Document:\n{{TEXT}}"
    ),
    DocumentType.SOCIAL: (
        "Improve this social media post:\n"
        "- Keep the author's voice and energy\n"
        "- Keep it short and readable\n"
        "- Fix obvious spelling and punctuation mistakes\n"
        "- Do not add hashtags or emoji that were not dictated\n\n"
        "Post:\n{{TEXT}}"
    ),
    DocumentType.CODE: (
        "Clean up this dictated code or technical text:\n"
        "- Preserve identifiers, symbols and keywords exactly\n"
        "- Fix only obvious transcription errors\n"
        "- Do not add explanations\n\n"
        "Code:\n{{TEXT}}"
    ),
    DocumentType.SEARCH: (
        "Turn this into a search query:\n"
        "- Extract the key terms\n"
        "- Remove unnecessary words\n"
        "- Keep it under 10 words\n"
        "- Use searchable keywords\n\n"
        "Query:\n{{TEXT}}"
    ),
    DocumentType.UNKNOWN: (
        "Improve this dictated text:\n"
        "- Use proper punctuation and capitalization\n"
        "- Write clear sentences\n"
        "- Maintain the original intent\n\n"
        "Text:\n{{TEXT}}"
    ),
}


def render_prompt(template: str, text: str) -> str:
    """Substitute {{TEXT}}; templates without the token get the text appended."""
    if TEXT_TOKEN in template:
        return template.replace(TEXT_TOKEN, text)
    return f"{template.rstrip()}\n\n{text}"


def build_prompt(
    text: str,
    document_type: DocumentType,
    custom_prompts: Optional[Dict[str, str]] = None,
) -> Tuple[str, str]:
    """
    Returns:
        (prompt, source) where source is "custom" or "default".
        A blank custom prompt counts as no custom prompt.
    """
    custom = (custom_prompts or {}).get(document_type.value, "")
    if custom and custom.strip():
        return render_prompt(custom, text), "custom"
    template = DEFAULT_PROMPTS.get(document_type, DEFAULT_PROMPTS[DocumentType.UNKNOWN])
    return render_prompt(template, text), "default"


ClientFactory = Callable[..., LLMClient]


class EnhancementOrchestrator:
    """
    Chooses between local and cloud enhancement for each call.

    Thread-safe: the snapshot is immutable and each cloud call runs on
    the shared executor.
    """

    def __init__(
        self,
        config: ConfigSnapshot,
        secrets: Optional[SecretStore] = None,
        learning: Optional["LearningStore"] = None,
        client_factory: ClientFactory = build_client,
        metrics: Optional["MetricsWriter"] = None,
    ):
        self.config = config
        self.secrets = secrets
        self.learning = learning if config.learning_enabled else None
        self.client_factory = client_factory
        self.metrics = metrics
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="scribeloop-llm")
        self._client: Optional[LLMClient] = None

    # Decision

    def _api_key(self) -> Optional[str]:
        if self.secrets is None:
            return None
        name = api_key_name(self.config.llm_provider)
        try:
            if not self.secrets.exists(name):
                return None
            key = self.secrets.retrieve(name).decode("utf-8").strip()
        except SecretNotFound:
            return None
        except (OSError, UnicodeDecodeError) as e:
            print(f"[Enhance] Could not read API key: {e}")
            return None
        return key or None

    def is_cloud_eligible(self, document_type: DocumentType) -> bool:
        if document_type not in CLOUD_ELIGIBLE_TYPES:
            return False
        return bool(self.config.cloud_types.get(document_type.value, False))

    def should_use_cloud(self, document_type: DocumentType) -> bool:
        return (
            self.config.llm_enabled
            and self.is_cloud_eligible(document_type)
            and self._api_key() is not None
        )

    # Cloud path

    def _get_client(self) -> LLMClient:
        if self._client is None:
            self._client = self.client_factory(
                self.config.llm_provider,
                self._api_key() or "",
                model=self.config.llm_model,
                timeout=self.config.timeout_seconds,
            )
        return self._client

    def _enhance_cloud(self, prompt: str) -> Optional[str]:
        """Returns the cloud text, or None when the caller should fall back."""
        provider = self.config.llm_provider
        try:
            client = self._get_client()
        except LLMError as e:
            print(f"[Enhance] {provider} unavailable: {e}")
            return None

        future = self._executor.submit(client.complete, prompt, SYSTEM_PROMPT)
        try:
            text = future.result(timeout=self.config.timeout_seconds)
        except FutureTimeout:
            # The request may still finish; its result is never read
            future.cancel()
            print(f"[Enhance] {provider} timed out after {self.config.timeout_seconds:g}s, using local rules")
            return None
        except LLMError as e:
            print(f"[Enhance] {provider} failed ({e}), using local rules")
            return None

        if not text or not text.strip():
            print(f"[Enhance] {provider} returned empty text, using local rules")
            return None
        return text.strip()

    # Local path

    def _learned_correction(self, text: str, document_type: DocumentType) -> Optional[str]:
        if self.learning is None:
            return None
        try:
            pattern = self.learning.find_similar(text, document_type, self.config.learning_threshold)
        except LearningStoreError as e:
            print(f"[Enhance] Learning lookup failed: {e}")
            return None
        return pattern.edited_text if pattern else None

    def _apply_learned(self, text: str, document_type: DocumentType) -> str:
        if self.learning is None or not self.config.apply_learned_patterns:
            return text
        try:
            return self.learning.apply_learned(text, document_type)
        except LearningStoreError as e:
            print(f"[Enhance] Could not apply learned patterns: {e}")
            return text

    def enhance_locally(self, text: str, document_type: DocumentType, greeting: str = "") -> Tuple[str, list, bool]:
        """
        Returns:
            (text, applied rule names, whether a learned pattern was used)
        """
        learned = self._learned_correction(text, document_type)
        if learned is not None:
            return learned, ["learned_correction"], True

        enhanced, applied = apply_local_rules(
            text,
            document_type,
            remove_filler_words=self.config.remove_fillers,
            auto_punctuate=self.config.auto_punctuate,
            auto_capitalize=self.config.auto_capitalize,
            greeting=greeting,
        )

        replaced = self._apply_learned(enhanced, document_type)
        if replaced != enhanced:
            applied.append("learned_replacements")
            return replaced, applied, True
        return enhanced, applied, False

    # Public API

    def enhance_detailed(
        self,
        text: str,
        document_type: DocumentType,
        command: Optional[VoiceCommand] = None,
    ) -> EnhancedText:
        """
        Enhance text for a document type.

        A voice command adds its recipient greeting (to the cloud prompt,
        or after filler removal locally) and its output format, such as
        bullets or a tweet's length, is applied to whichever result wins.
        """
        start = time.perf_counter()

        if not text or not text.strip():
            decision = EnhancementDecision(document_type, False, "default", False)
            log_enhancement(self.metrics, decision, 0.0)
            return EnhancedText(text, text, document_type, decision)

        used_cloud = False
        fell_back = False
        prompt_source = "default"
        enhanced: Optional[str] = None
        applied: list = []
        learned_applied = False

        if self.should_use_cloud(document_type):
            prompt, prompt_source = build_prompt(
                with_recipient_greeting(text, command), document_type, self.config.custom_prompts,
            )
            enhanced = self._enhance_cloud(prompt)
            if enhanced is not None:
                used_cloud = True
                applied = [f"cloud:{self.config.llm_provider}"]
            else:
                fell_back = True

        if enhanced is None:
            enhanced, applied, learned_applied = self.enhance_locally(
                text, document_type, greeting=recipient_greeting(command),
            )

        if command is not None:
            applied.insert(0, f"voice_command:{command.format}")
            formatted = apply_command_format(enhanced, command)
            if formatted != enhanced:
                applied.append("command_format")
                enhanced = formatted

        decision = EnhancementDecision(
            document_type=document_type,
            used_cloud=used_cloud,
            prompt_source=prompt_source,
            fell_back_to_default=fell_back,
        )
        latency_ms = (time.perf_counter() - start) * 1000
        log_enhancement(self.metrics, decision, latency_ms, learned_applied)

        route = f"cloud ({self.config.llm_provider})" if used_cloud else "local"
        print(f"[Enhance] {document_type.value} via {route} in {latency_ms:.0f}ms")

        return EnhancedText(
            original_text=text,
            enhanced_text=enhanced,
            document_type=document_type,
            decision=decision,
            applied_rules=applied,
            learned_pattern_applied=learned_applied,
        )

    def enhance(self, text: str, document_type: DocumentType, command: Optional[VoiceCommand] = None) -> str:
        return self.enhance_detailed(text, document_type, command).enhanced_text

    def close(self) -> None:
        # Don't wait on an in-flight request that is already abandoned
        self._executor.shutdown(wait=False, cancel_futures=True)
        if self._client is not None:
            self._client.close()
            self._client = None

    def __enter__(self) -> "EnhancementOrchestrator":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
