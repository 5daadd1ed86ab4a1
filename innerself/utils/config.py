"""
Configuration management for AWS services and pipeline settings.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


@dataclass
class BedrockLLMConfig:
    """Configuration for Amazon Bedrock LLM service."""
    region: str
    model_id: str
    max_tokens: int
    temperature: float
    read_timeout: int


@dataclass
class BedrockEmbedConfig:
    """Configuration for Amazon Bedrock Embed service."""
    region: str
    model_id: str
    dimension: int
    retry_attempts: int
    retry_delay: float


@dataclass
class OpenSearchConfig:
    """Configuration for OpenSearch."""
    endpoint: str
    port: int
    region: str
    index_prefix: str
    dimension: int
    use_ssl: bool
    auth_service: str


@dataclass
class PipelineConfig:
    """Configuration for the entry-processing pipeline."""
    store_backend: str
    min_text_length: int
    recent_entries: int
    similar_entries: int
    extraction_timeout: float
    min_event_year: int
    max_future_years: int
    upsert_max_attempts: int
    fanout_workers: int
    lock_stale_after: float


@dataclass
class MCPConfig:
    """Configuration for MCP interface."""
    transport: str
    host: str
    port: int


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    bedrock_llm: BedrockLLMConfig
    bedrock_embed: BedrockEmbedConfig
    opensearch: OpenSearchConfig
    pipeline: PipelineConfig
    mcp: MCPConfig


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-sonnet-20240229-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '4000')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.0')),
                                          read_timeout=int(os.getenv('BEDROCK_LLM_READ_TIMEOUT', '120')))

    # Bedrock Embed configuration
    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=int(os.getenv('BEDROCK_EMBED_DIMENSION', '1024')),
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '3')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '1.0')))

    # Document and vector store configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         index_prefix=os.getenv('OPENSEARCH_INDEX_PREFIX', 'innerself'),
                                         dimension=int(os.getenv('OPENSEARCH_DIMENSION', '1024')),
                                         use_ssl=_env_bool('OPENSEARCH_USE_SSL', 'true'),
                                         auth_service=os.getenv('OPENSEARCH_AUTH_SERVICE', 'es'))

    # Pipeline configuration
    pipeline_config = PipelineConfig(store_backend=os.getenv('STORE_BACKEND', 'opensearch'),
                                     min_text_length=int(os.getenv('PIPELINE_MIN_TEXT_LENGTH', '10')),
                                     recent_entries=int(os.getenv('PIPELINE_RECENT_ENTRIES', '10')),
                                     similar_entries=int(os.getenv('PIPELINE_SIMILAR_ENTRIES', '5')),
                                     extraction_timeout=float(os.getenv('PIPELINE_EXTRACTION_TIMEOUT', '60')),
                                     min_event_year=int(os.getenv('PIPELINE_MIN_EVENT_YEAR', '1985')),
                                     max_future_years=int(os.getenv('PIPELINE_MAX_FUTURE_YEARS', '1')),
                                     upsert_max_attempts=int(os.getenv('PIPELINE_UPSERT_MAX_ATTEMPTS', '5')),
                                     fanout_workers=int(os.getenv('PIPELINE_FANOUT_WORKERS', '3')),
                                     lock_stale_after=float(os.getenv('PIPELINE_LOCK_STALE_SECONDS', '180')))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     bedrock_llm=bedrock_llm_config,
                     bedrock_embed=bedrock_embed_config,
                     opensearch=opensearch_config,
                     pipeline=pipeline_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
