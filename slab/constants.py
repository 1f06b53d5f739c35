# --- Token Estimation ---

CHARS_PER_TOKEN = 4


# --- Context ---

DEFAULT_CONTEXT_LIMIT = 32768

IGNORED_DIRS = frozenset(
    {
        "node_modules",
        "target",
        "dist",
        "build",
        "__pycache__",
        ".git",
        ".svn",
        ".hg",
        "vendor",
        "venv",
        ".venv",
        "env",
        ".env",
    }
)

BINARY_EXTENSIONS = frozenset(
    {
        # images
        "png", "jpg", "jpeg", "gif", "bmp", "ico", "webp", "svg",
        # audio/video
        "mp3", "mp4", "wav", "avi", "mov", "flv", "wmv", "webm",
        # archives
        "zip", "tar", "gz", "bz2", "7z", "rar", "xz",
        # executables
        "exe", "dll", "so", "dylib", "bin", "o", "a",
        # documents
        "pdf", "doc", "docx", "xls", "xlsx", "ppt", "pptx",
        # fonts
        "ttf", "otf", "woff", "woff2", "eot",
        # other
        "pyc", "pyo", "class", "jar", "war", "sqlite", "db", "sqlite3", "lock",
    }
)


# --- File Operations ---

PROTECTED_DIR = ".git"
DIFF_PREVIEW_LINES = 20

# Edits that shrink a file this much are treated as snippets, not whole files
TRUNCATION_MIN_ORIGINAL_LINES = 20
TRUNCATION_RATIO = 0.5

EXEC_FENCE_TAGS = frozenset({"exec", "run"})


# --- Phase Loop ---

DEFAULT_MAX_PHASES = 10
PHASE_TIMEOUT = 120
DEFAULT_PHASE_FOLLOW_UP = (
    "The checks above found issues. Please fix them and output the complete corrected file."
)


# --- Shell ---

SHELL_OUTPUT_LIMIT = 20000
EXEC_PREVIEW_WIDTH = 60


# --- Inference ---

DEFAULT_OLLAMA_HOST = "http://localhost:11434"
STREAM_TIMEOUT = 300
REQUEST_TIMEOUT = 30


# --- Editor ---

MAX_COMPLETION_ITEMS = 10
