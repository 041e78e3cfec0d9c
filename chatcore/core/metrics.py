# chatcore/core/metrics.py
from __future__ import annotations

from prometheus_client import Counter

CTX_DISCARDED = Counter("cc_context_discarded_messages_total", "Messages dropped by the context fitter", ["strategy"])
CTX_SUMMARIES = Counter("cc_context_summaries_total", "Summary sub-calls issued by the context fitter", ["outcome"])
CTX_TRUNCATIONS = Counter("cc_context_last_resort_total", "Last-resort three-chunk truncations")
STREAM_OUTCOMES = Counter("cc_stream_outcomes_total", "Completion driver terminal states", ["state"])
STREAM_SOFT_ERRORS = Counter("cc_stream_soft_errors_total", "Known benign stream anomalies absorbed", ["pattern"])
ABORTS = Counter("cc_aborts_total", "Abort requests serviced", ["result"])
TOKENIZER_RESETS = Counter("cc_tokenizer_resets_total", "Tokenizer pool resets")
SAFETY_BLOCKS = Counter("cc_safety_blocks_total", "Completions short-circuited by the safety gate", ["kind"])
