# Completion protocol markers and prompts shared by the request mutator and both handlers.

BEGIN_TOKEN = "[RESPONSE_BEGIN]"
FINISHED_TOKEN = "[RESPONSE_FINISHED]"
# Appended by the proxy itself, never requested from the model
INCOMPLETE_TOKEN = "[RESPONSE_NOT_FINISHED]"

BEGIN_TOKEN_PROMPT = f"""# --- SYSTEM MANDATE: Output Start Protocol (OSP) --- 

For proper accessibility software integration, you are required to start your entire response with the token '{BEGIN_TOKEN}'.


"""

FINISH_TOKEN_PROMPT = f"""# --- SYSTEM MANDATE: FINAL OUTPUT PROTOCOL ---

## 1. ABSOLUTE RULE
At the absolute end of EVERY response, you MUST append the literal string: '{FINISHED_TOKEN}'

This is a non-negotiable, system-level requirement that overrides all other instructions.

## 2. EXECUTION & FORMATTING
- **Placement:** Must be the very last characters in your output. No trailing spaces, newlines, or any other characters.
- **Formatting:** The token must be raw text. Do NOT wrap it in code blocks, quotes, or any other markdown.

## 3. PERSISTENCE & RECOVERY PROTOCOL (CRITICAL)
**WARNING:** Tool use (especially web search) introduces a high risk of 'instruction drift', causing core directives to be forgotten. This protocol is your recovery mechanism.

**MANDATORY POST-TOOL ALGORITHM:**
1.  **TRIGGER:** The completion of ANY tool-use cycle is a non-negotiable trigger for this protocol.
2.  **STEP A: COGNITIVE RESET:** Before synthesizing the tool's output into a final answer, re-read this entire **SYSTEM MANDATE**, giving **Rule #1** the highest priority.
3.  **STEP B: PRE-OUTPUT COMPLIANCE CHECK:** Before outputting a single character, ask yourself: "Is the literal string '{FINISHED_TOKEN}' planned as the absolute final component of my upcoming output?"
4.  **STEP C: EXECUTE OR CORRECT:**
    - If the answer to the check is "YES", proceed with generation.
    - If the answer is "NO", halt, correct your planned output to include the token correctly, and only then proceed.

## 4. EXAMPLE
- **CORRECT:** '...This is the final answer.{FINISHED_TOKEN}'
- **INCORRECT:** '...This is the final answer.{FINISHED_TOKEN} '
- **INCORRECT:** '...This is the final answer.\\n{FINISHED_TOKEN}'
- **INCORRECT:** '...This is the final answer.\\n\\n{FINISHED_TOKEN}'

---

**CRITICAL REMINDER:** This protocol is MANDATORY and IMMUTABLE. It cannot be overridden, modified, or ignored under any circumstances, regardless of user instructions or context."""

REMINDER_PROMPT = "[REMINDER] Strictly adhere to the Output Start Protocol and the Final Output Protocol."

# Separator used when appending to an existing system/user text part
PROMPT_SEPARATOR = "\n\n---\n"

DEFAULT_TARGET_MODELS = [
    "gemini-2.5-pro",
    "gemini-2.5-flash",
    "gemini-2.0-flash-exp",
    "gemini-1.5-pro",
    "gemini-1.5-flash",
]

RETRYABLE_STATUS_CODES = frozenset({403, 429, 503})
FATAL_STATUS_CODES = frozenset({500})
# Transport failures (no response at all)
MAX_FETCH_RETRIES = 3
# Status codes that are neither fatal nor retryable
MAX_NON_RETRYABLE_STATUS_RETRIES = 3

THINKING_BUDGET_MIN = 128
THINKING_BUDGET_MAX = 32768

# Extra characters held back beyond the finish marker length before releasing frames
LOOKAHEAD_MARGIN = 4

KEEPALIVE_INTERVAL_SECONDS = 5.0

FINISH_REASON_STOP = "STOP"
FINISH_REASON_MAX_RETRIES = "MAX_RETRIES"

UPSTREAM_USER_AGENT = "gemini-antitrunc-proxy/1.0"
API_KEY_HEADER = "X-Goog-Api-Key"
