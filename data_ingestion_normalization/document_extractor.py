"""
Document extraction: free text (already OCR'd / text-extracted) -> records.

The text-generation service is asked to restate the document as a JavaScript
array named `data`; its reply goes through the record repair parser, so a
malformed reply degrades to a partial or empty record list instead of an error.
"""

import structlog
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from jinja2 import Template

from core_infrastructure.config_manager import TextGenerationConfig, get_text_generation_config
from data_ingestion_normalization.record_repair import RecordRepairParser, RepairReport

logger = structlog.get_logger(__name__)

EXTRACTION_PROMPT = Template("""
You are a helpful assistant that transforms the given data into table data in one array of objects called 'data' in JavaScript. Don't add additional text or code.

Given the following text:
{{ document_text }}

Transform it into table data in one array of objects called 'data' in JavaScript. Provide only the JavaScript code, and ensure the code is valid JavaScript.
""")


def build_extraction_prompt(document_text: str) -> str:
    return EXTRACTION_PROMPT.render(document_text=document_text).strip()


class TextGenerator(ABC):
    """Anything that turns a prompt into text."""

    @abstractmethod
    async def generate(self, prompt: str) -> str:
        ...


class GroqTextGenerator(TextGenerator):
    def __init__(self, config: Optional[TextGenerationConfig] = None, client=None):
        self.config = config or get_text_generation_config()
        if client is None:
            from groq import AsyncGroq
            client = AsyncGroq(api_key=self.config.api_key or None, timeout=self.config.timeout_seconds)
        self.client = client

    async def generate(self, prompt: str) -> str:
        response = await self.client.chat.completions.create(
            model=self.config.model,
            messages=[{"role": "user", "content": prompt}],
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
        )
        content = response.choices[0].message.content or ""
        logger.info("text_generation_completed", model=self.config.model, response_chars=len(content))
        return content


class DocumentRecordExtractor:
    def __init__(self, generator: TextGenerator, parser: Optional[RecordRepairParser] = None):
        self.generator = generator
        self.parser = parser or RecordRepairParser()

    async def extract_report(self, document_text: str) -> RepairReport:
        prompt = build_extraction_prompt(document_text)
        reply = await self.generator.generate(prompt)
        report = self.parser.parse(reply)
        logger.info("document_records_extracted", records=len(report.records),
                    strategy=report.strategy, fragment_failures=report.fragment_failures)
        return report

    async def extract(self, document_text: str) -> List[Dict[str, Any]]:
        return (await self.extract_report(document_text)).records
