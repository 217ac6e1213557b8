"""
Amazon Bedrock LLM client wrapper used as the pattern decision oracle transport.
"""

import random
import time
from typing import Any, Dict, List, Optional, Tuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockLLMConfig
from .logging_config import get_logger

logger = get_logger(__name__)

# Request errors that fail the same way on every attempt
NON_RETRYABLE_ERROR_CODES = {'ValidationException', 'AccessDeniedException', 'ResourceNotFoundException'}


class BedrockLLMError(Exception):
    """Custom exception for Bedrock LLM errors."""
    pass


def _error_code(error: Exception) -> Optional[str]:
    if isinstance(error, ClientError):
        return error.response.get('Error', {}).get('Code')
    return None


class BedrockLLM:
    """Amazon Bedrock Converse client with retry, prefill and usage logging."""

    def __init__(self, config: BedrockLLMConfig):
        """
        Initialize Bedrock LLM client.

        Args:
            config: BedrockLLMConfig instance with connection parameters
        """
        self.config = config
        self.model_id = config.model_id

        # Retries are handled here so backoff can skip non-retryable errors
        self.bedrock_runtime = boto3.client('bedrock-runtime',
                                            region_name=config.region,
                                            config=BotoConfig(connect_timeout=60,
                                                              read_timeout=300,
                                                              retries={'max_attempts': 0}))

        logger.info(f'Initialized Bedrock LLM client with model: {self.model_id}')

    @staticmethod
    def text_message(role: str, text: str) -> Dict[str, Any]:
        """Build a Converse API message with a single text block."""
        return {'role': role, 'content': [{'text': text}]}

    def _stream(self, messages: List[Dict[str, Any]], system_prompt: str,
                inference_config: Dict[str, Any]) -> Tuple[str, Optional[Dict[str, Any]]]:
        stream = self.bedrock_runtime.converse_stream(modelId=self.model_id,
                                                      messages=messages,
                                                      system=[{'text': system_prompt}],
                                                      inferenceConfig=inference_config).get('stream')
        text = ''
        usage = None
        for event in stream or []:
            if 'contentBlockDelta' in event:
                text += event['contentBlockDelta']['delta'].get('text', '')
            if 'metadata' in event:
                usage = {**event['metadata'].get('usage', {}), **event['metadata'].get('metrics', {})}
        return text, usage

    def generate_response(self,
                          messages: List[Dict[str, Any]],
                          system_prompt: str,
                          max_tokens: Optional[int] = None,
                          temperature: Optional[float] = None,
                          stop_sequences: Optional[List[str]] = None,
                          prefill: Optional[str] = None) -> Tuple[str, Optional[Dict[str, Any]]]:
        """
        Generate a response with retry logic.

        Args:
            messages: Conversation in Bedrock Converse format
            system_prompt: System prompt for the conversation
            max_tokens: Maximum tokens to generate (uses config default if None)
            temperature: Temperature for generation (uses config default if None)
            stop_sequences: Stop sequences for generation
            prefill: Text the assistant turn starts with; not repeated in the result

        Returns:
            Tuple of (response_text, usage_and_latency_metrics)

        Raises:
            BedrockLLMError: If the request is rejected or all retry attempts fail
        """
        if prefill:
            messages = list(messages) + [self.text_message('assistant', prefill)]

        inference_config = {
            'maxTokens': max_tokens if max_tokens is not None else self.config.max_tokens,
            'temperature': temperature if temperature is not None else self.config.temperature,
            'stopSequences': stop_sequences or [],
        }

        for attempt in range(self.config.retry_attempts):
            try:
                logger.debug(f'Bedrock LLM request attempt {attempt + 1}/{self.config.retry_attempts}')
                text, usage = self._stream(messages, system_prompt, inference_config)
                logger.debug(f'Bedrock LLM response generated (length: {len(text)}, usage: {usage})')
                return text, usage

            except (ClientError, BotoCoreError) as e:
                code = _error_code(e)
                if code in NON_RETRYABLE_ERROR_CODES:
                    logger.error(f'Bedrock LLM rejected the request ({code}): {e}')
                    raise BedrockLLMError(f'Bedrock LLM request rejected: {e}')

                logger.warning(f'Bedrock LLM attempt {attempt + 1}/{self.config.retry_attempts} failed: {e}')
                if attempt < self.config.retry_attempts - 1:
                    # Exponential backoff with jitter
                    delay = self.config.retry_delay * (2**attempt) + random.uniform(0, 1)
                    time.sleep(delay)
                else:
                    raise BedrockLLMError(f'Bedrock LLM failed after {self.config.retry_attempts} attempts: {e}')

            except Exception as e:
                logger.error(f'Unexpected error in Bedrock LLM: {e}')
                raise BedrockLLMError(f'Unexpected Bedrock LLM error: {e}')

        raise BedrockLLMError(f'Bedrock LLM failed after {self.config.retry_attempts} attempts')

    def complete(self,
                 system_prompt: str,
                 user_message: str,
                 prefill: Optional[str] = None,
                 stop_sequences: Optional[List[str]] = None) -> str:
        """Single-turn completion returning only the generated text."""
        text, _ = self.generate_response(messages=[self.text_message('user', user_message)],
                                         system_prompt=system_prompt,
                                         stop_sequences=stop_sequences,
                                         prefill=prefill)
        return text or ''

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock LLM service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            response, _ = self.generate_response(messages=[self.text_message('user', 'Hi')],
                                                 system_prompt="Respond with just 'OK'.",
                                                 max_tokens=10,
                                                 temperature=0.0)
            return len(response.strip()) > 0

        except Exception as e:
            logger.error(f'Bedrock LLM health check failed: {e}')
            return False
