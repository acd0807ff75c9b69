"""Agent internals -- the inference side of run_agent.py.

Module Overview
---------------
**chat_types.py**
    ChatMessage, ImageAttachment, ModelResult and the StreamChunk /
    DebugEvent shapes surfaced to callers while a request runs.

**config.py**
    LOAF_HOME, .env loading, the config.yaml bridge, thinking levels and
    the LoafConfig dataclass.

**cancellation.py**
    CancelToken and InferenceCancelled. Threaded through every await in
    a run so Ctrl+C stops work promptly.

**retry.py**
    RetryPolicy: exponential backoff with jitter for rate-limited
    provider requests only.

**steering.py**
    SteeringQueue for messages typed while the model is still working.

**tool_declarations.py**
    Provider-safe tool names and the reverse map back to registry names.

**inference_loop.py**
    The provider-agnostic multi-round tool-calling loop.

**providers/**
    OpenRouter, OpenAI Responses and Gemini adapters for the loop.

**interleaving.py**
    Display helpers for mixing streamed text with tool-call rows.

Architecture
------------
1. **One loop, thin adapters**: retry, cancellation, steering, name
   mapping and tool execution live in InferenceLoop; adapters only
   translate requests and responses.

2. **No circular imports**: modules depend on external packages,
   loaf_constants and the tools package, never on run_agent.py.

3. **LoafAgent as orchestrator**: run_agent.py owns history and the
   current cancel token and wires these modules together.
"""
