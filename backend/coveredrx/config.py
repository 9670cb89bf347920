# backend/coveredrx/config.py
"""
Central configuration

Single source of truth for endpoints, API keys, model names, timeouts and
cache sizing. Values come from the environment (a local .env file is loaded
first) and are read once at import time.
"""
import os

from dotenv import load_dotenv

load_dotenv()

HERE = os.path.dirname(__file__)

# Text-generation backend (OpenAI-compatible chat completions)
GROQ_API_KEY = os.getenv("GROQ_API_KEY")
LLM_ENDPOINT = os.getenv("LLM_ENDPOINT", "https://api.groq.com/openai/v1/chat/completions")
NORMALIZER_MODEL = os.getenv("NORMALIZER_MODEL", "compound-beta-mini")
RESEARCH_MODEL = os.getenv("RESEARCH_MODEL", "compound-beta")
HEALTH_CHECK_MODEL = os.getenv("HEALTH_CHECK_MODEL", "llama-3.3-70b-versatile")
LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "30"))

# Remote retrieval agent; its budget must stay well under LLM_TIMEOUT_SECONDS
TOOLHOUSE_API_KEY = os.getenv("TOOLHOUSE_API_KEY")
TOOLHOUSE_AGENT_URL = os.getenv("TOOLHOUSE_AGENT_URL", "https://agents.toolhouse.ai/formulary-coverage-agent")
TOOLHOUSE_HEALTH_URL = os.getenv("TOOLHOUSE_HEALTH_URL", "https://api.toolhouse.ai/v1/health")
TOOLHOUSE_TIMEOUT_SECONDS = float(os.getenv("TOOLHOUSE_TIMEOUT_SECONDS", "5"))

# Static formulary files, one JSON document per plan
FORMULARY_DIR = os.getenv("FORMULARY_DIR", os.path.join(HERE, "data", "formularies"))

# Web research cache
RESEARCH_CACHE_TTL_SECONDS = float(os.getenv("RESEARCH_CACHE_TTL_SECONDS", "3600"))
RESEARCH_CACHE_MAX_ENTRIES = int(os.getenv("RESEARCH_CACHE_MAX_ENTRIES", "256"))

# HTTP layer
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")
PORT = int(os.getenv("PORT", "8000"))
API_VERSION = "1.0.0"
