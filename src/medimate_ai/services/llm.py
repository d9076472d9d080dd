"""LLM service answering medical questions with Gemini."""

import json
import re
from typing import Optional

import google.generativeai as genai
import structlog
from google.api_core import exceptions

from ..domain.errors import ConfigurationError, MediMateError, NetworkUnavailable, PermissionDenied
from ..domain.models import MedicalAnswer
from ..repositories.base import AnswerService

logger = structlog.get_logger()

DISCLAIMER = "This information is not a substitute for professional medical advice."


class MedicalAnswerService(AnswerService):
    """Answer service using Google's Gemini model with a medical focus."""

    def __init__(self, api_key: str, model_name: str = "gemini-1.5-flash") -> None:
        genai.configure(api_key=api_key)
        self.model_name = model_name
        self.model = genai.GenerativeModel(model_name)
        logger.info("llm_service_init", model=model_name)

    def _format_prompt(self, question: str) -> str:
        """Format the medical question prompt."""
        return f"""You are MediMate, a careful medical information assistant.
Answer the user's question clearly and concisely for a general audience.
If the question describes an emergency, tell the user to contact emergency services.
Respond with a JSON object with two keys:
  "answer": your answer as plain text,
  "source": a reputable reference for the answer, or null if none applies.
Question: {question}
JSON: """

    def _extract_answer(self, text: str) -> MedicalAnswer:
        """Pull the answer object out of the model output."""
        cleaned = re.sub(r"^```(?:json)?|```$", "", text.strip(), flags=re.MULTILINE).strip()
        match = re.search(r"\{.*\}", cleaned, flags=re.DOTALL)
        if match:
            try:
                payload = json.loads(match.group(0))
                answer = str(payload.get("answer") or "").strip()
                source: Optional[str] = payload.get("source") or None
                if answer:
                    return MedicalAnswer(answer=answer, source=source)
            except (json.JSONDecodeError, AttributeError):
                logger.warning("llm_output_not_json", length=len(text))
        return MedicalAnswer(answer=cleaned or DISCLAIMER)

    async def answer(self, question: str) -> MedicalAnswer:
        """Send a single question; no retries are attempted here."""
        prompt = self._format_prompt(question)
        try:
            response = await self.model.generate_content_async(prompt)
        except (exceptions.ResourceExhausted, exceptions.ServiceUnavailable, exceptions.DeadlineExceeded) as e:
            logger.warning("llm_unavailable", error=str(e))
            raise NetworkUnavailable("The answer service is busy. Please try again.") from e
        except exceptions.PermissionDenied as e:
            logger.error("llm_permission_denied", error=str(e))
            raise PermissionDenied("The answer service rejected the request.") from e
        except (exceptions.InvalidArgument, exceptions.Unauthenticated) as e:
            logger.error("llm_misconfigured", error=str(e))
            raise ConfigurationError("The answer service is misconfigured.") from e
        except Exception as e:
            logger.error("response_generation_error", error=str(e))
            raise MediMateError("Could not get an answer. Please try again.") from e

        result = self._extract_answer(response.text)
        logger.info("answer_generated", question_length=len(question), has_source=result.source is not None)
        return result
