"""
Constants and configuration values for the detection and explanation workflow.
"""

# User tiers
USER_TIERS = ['basic', 'standard', 'premium', 'pro']
DEFAULT_TIER = 'basic'

# Daily explanation limits per tier and mode (None = unlimited)
TIER_LIMITS = {
    'basic': {'fast': 5, 'standard': 3, 'quality': 1},
    'standard': {'fast': None, 'standard': 3, 'quality': 1},
    'premium': {'fast': None, 'standard': None, 'quality': 3},
    'pro': {'fast': None, 'standard': None, 'quality': None},
}

# Monthly export limits per tier and export kind (None = unlimited)
EXPORT_KINDS = ['hwp', 'pdf']
EXPORT_LIMITS = {
    'basic': {'hwp': 0, 'pdf': 3},
    'standard': {'hwp': 5, 'pdf': 30},
    'premium': {'hwp': 30, 'pdf': None},
    'pro': {'hwp': None, 'pdf': None},
}

# Display labels for explanation modes
MODE_LABELS = {
    'fast': 'Fast',
    'standard': 'Standard',
    'quality': 'Quality',
}

# Region detector defaults
DEFAULT_DETECTION_PARAMS = {
    'min_area': 20,           # Discard rects with area <= this (noise specks)
    'max_aspect_ratio': 15.0, # Discard rects with max(w/h, h/w) >= this (rule lines)
    'gap_ratio': 0.03,        # Merge gap threshold as a fraction of image width
    'block_size': 11,         # Adaptive threshold neighbourhood
    'c': 2,                   # Adaptive threshold constant
}

# Retry defaults for external AI calls
DEFAULT_RETRY_PARAMS = {
    'max_retries': 3,
    'initial_delay': 2.0,
    'backoff_factor': 2.0,
}

# HTTP status codes mapped to error kinds
RATE_LIMIT_STATUS_CODES = {429}
UNAVAILABLE_STATUS_CODES = {500, 502, 503, 504}

# Record placeholder / status messages
STATUS_MESSAGES = {
    'placeholder': 'Waiting for explanation...',
    'recognizing': '[Page {page} problem {number}] Analyzing problem region...',
    'generating': '[Page {page} problem {number}] Generating explanation...',
    'creating_cards': 'Creating problem cards...',
    'starting': 'Starting generation of {count} explanations...',
    'completed': 'All explanations have been generated.',
    'cancelled': 'Explanation generation was cancelled.',
    'refunded': '({count} usage restored for explanations that did not complete.)',
    'retry_failed': 'Explanation generation failed. Press retry to try again.',
    'nothing_detected': 'No problems were found in the uploaded pages.',
    'quota_exceeded': "Today's '{label}' usage is exhausted. {remaining} more can be generated today.",
    'refund_failed': 'Restoring usage failed. Please refresh and verify your remaining usage.',
}

# Formatting rule appended to the explanation system instruction
EXPLANATION_FORMAT_RULE = (
    "Every sentence must end with a period. "
    "Separate sentences with a blank line."
)

# Default prompt templates seeded into the prompts table
DEFAULT_PROMPTS = {
    'systemInstruction': (
        "You are a patient mathematics tutor who writes step-by-step "
        "explanations for Korean high-school math problems."
    ),
    'generateExplanation': (
        "Write a step-by-step explanation for the following problem.\n"
        "Answer with a JSON object with keys 'explanation' (markdown, LaTeX allowed), "
        "'coreConcepts' (list of up to 3 strings) and 'difficulty' (integer 1-5).\n\n"
        "[Problem]\n{{problemText}}"
    ),
    'verifyExplanation': (
        "Check the following explanation for mathematical errors and formatting "
        "problems. Return only the corrected markdown.\n\n{{explanation}}"
    ),
    'recognizeProblem': (
        "Transcribe the math problem in this image. Answer with a JSON object with "
        "keys 'problemType' ('multiple-choice' or 'free-response'), 'problemBody' "
        "(text with LaTeX) and 'choices' (string, empty when there are none)."
    ),
    'askAboutLineSystem': (
        "You answer a student's question about one line of a math explanation. "
        "Be concise and refer to the line directly."
    ),
    'askAboutLineUser': (
        "[Problem]\n{{problemText}}\n\n[Full explanation]\n{{fullExplanation}}\n\n"
        "[Selected line]\n{{selectedLine}}\n\n[Question]\n{{userQuestion}}"
    ),
    'generateVariation': (
        "Create a new problem that varies the base problem below, then solve it.\n"
        "Answer with a JSON object with keys 'problem' (problem text with LaTeX) and "
        "'explanation' (step-by-step markdown explanation).\n\n"
        "[Base problem]\n{{baseProblemText}}\n\n"
        "[Variation level: {{variationLevel}}]\n{{levelDescription}}{{coreIdeaInstruction}}"
    ),
    'variationNumeric': (
        "Keep the structure and wording of the problem. Change only the numbers so "
        "that the answer stays clean."
    ),
    'variationForm': (
        "Keep the underlying concept but change how the problem is presented, for "
        "example its setting or what is asked. Focus on: {{selectedCoreIdea}}"
    ),
    'variationCreative': (
        "Write a new problem that applies the same idea in an unfamiliar situation. "
        "Focus on: {{selectedCoreIdea}}"
    ),
}
