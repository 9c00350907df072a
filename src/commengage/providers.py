# /commengage/providers.py
"""
AI capabilities consumed by the engine: embeddings, summaries, and answers.

The engine only depends on the three protocols below. The default
implementations wrap a HuggingFace sentence embedding model and a LangChain
chat/LLM model (local Ollama or the Groq API).
"""
from __future__ import annotations

import os
from typing import Protocol, Sequence

from langchain_core.output_parsers import StrOutputParser
from langchain_core.prompts import ChatPromptTemplate
from langchain_huggingface import HuggingFaceEmbeddings
from langchain_ollama import OllamaLLM

from .config import (
    API_MODEL_NAME,
    EMBEDDING_MODEL_NAME,
    LOCAL_MODEL_NAME,
    USE_API_LLM,
    console,
    get_model_kwargs,
)
from .models import ContextChunk, Turn
from .observability import get_logger

logger = get_logger(__name__)


class Embedder(Protocol):
    async def embed(self, text: str) -> Sequence[float]:
        ...


class Summarizer(Protocol):
    async def summarize(self, text: str) -> str:
        ...


class AnswerGenerator(Protocol):
    async def generate(self, question: str, chunks: Sequence[ContextChunk], history: Sequence[Turn]) -> str:
        ...


SUMMARY_PROMPT = ChatPromptTemplate.from_template(
    """Summarize the following community post in two or three sentences.
Keep names, places, dates, and any request for help. Do not add facts.

POST:
{content}
"""
)

ANSWER_PROMPT = ChatPromptTemplate.from_template(
    """You are a helpful assistant for a local community platform.
Answer the user's question using only the community content below.
If the content does not cover the question, say so plainly instead of guessing.
Use the conversation so far only to resolve references like "that event" or "it".

COMMUNITY CONTENT:
{context}

CONVERSATION SO FAR:
{history}

QUESTION:
{question}
"""
)


def format_context(chunks: Sequence[ContextChunk]) -> str:
    if not chunks:
        return "(no matching community content)"
    lines = []
    for chunk in chunks:
        label = "Help request" if chunk.kind.value == "help_request" else "Post"
        lines.append(f"[{label} {chunk.item_id}] {chunk.text}")
    return "\n".join(lines)


def format_history(history: Sequence[Turn]) -> str:
    if not history:
        return "(new conversation)"
    lines = []
    for turn in history:
        lines.append(f"User: {' '.join(turn.question.split())}")
        lines.append(f"Assistant: {' '.join(turn.answer.split())}")
    return "\n".join(lines)


def initialize_llm():
    """Initializes the chat/LLM model based on global configuration."""
    options = {
        "temperature": 0.3,
        "top_p": 0.95,
        "num_predict": 800,
        "repeat_penalty": 1.15,
    }
    if USE_API_LLM:
        api_key = os.getenv("GROQ_API_KEY")
        if not api_key:
            raise RuntimeError("USE_API_LLM is set but GROQ_API_KEY is missing.")
        from langchain_groq import ChatGroq

        console.print(f"[green]Using API Model: {API_MODEL_NAME}[/green]")
        return ChatGroq(
            model_name=API_MODEL_NAME,
            temperature=options["temperature"],
            top_p=options["top_p"],
            max_tokens=options["num_predict"],
            groq_api_key=api_key,
        )
    console.print(f"[green]Using Local Model: {LOCAL_MODEL_NAME}[/green]")
    return OllamaLLM(
        model=LOCAL_MODEL_NAME,
        temperature=options["temperature"],
        top_p=options["top_p"],
        num_predict=options["num_predict"],
        repeat_penalty=options["repeat_penalty"],
    )


class HuggingFaceEmbedder:
    """Sentence-transformer embeddings; the model is loaded on first use."""

    def __init__(self, model_name: str = EMBEDDING_MODEL_NAME, embeddings=None):
        self.model_name = model_name
        self._embeddings = embeddings

    def _get_embeddings(self):
        if self._embeddings is None:
            self._embeddings = HuggingFaceEmbeddings(
                model_name=self.model_name,
                model_kwargs=get_model_kwargs(),
            )
            logger.info("embedding_model_loaded", model=self.model_name)
        return self._embeddings

    async def embed(self, text: str) -> list[float]:
        return await self._get_embeddings().aembed_query(text)


class LLMSummarizer:
    def __init__(self, llm=None):
        self._chain = SUMMARY_PROMPT | (llm if llm is not None else initialize_llm()) | StrOutputParser()

    async def summarize(self, text: str) -> str:
        return await self._chain.ainvoke({"content": text})


class LLMAnswerGenerator:
    def __init__(self, llm=None):
        self._chain = ANSWER_PROMPT | (llm if llm is not None else initialize_llm()) | StrOutputParser()

    async def generate(self, question: str, chunks: Sequence[ContextChunk], history: Sequence[Turn]) -> str:
        return await self._chain.ainvoke(
            {
                "context": format_context(chunks),
                "history": format_history(history),
                "question": question,
            }
        )
