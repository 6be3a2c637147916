"""Constants used across the slidedeck package."""

# Slide settings defaults
DEFAULT_OUTPUT_DIR = "slides"
DEFAULT_SCENE_THRESHOLD = 0.3  # ffmpeg scene score (0-1, lower = more sensitive)
DEFAULT_MAX_SLIDES = 10
DEFAULT_MIN_DURATION_SECONDS = 2.0

# Worker pools
DEFAULT_SLIDES_WORKERS = 8
MAX_SLIDES_WORKERS = 16
MAX_REFINE_WORKERS = 4

# Threshold calibration
DEFAULT_SLIDES_SAMPLE_COUNT = 8
MIN_SLIDES_SAMPLE_COUNT = 3
MAX_SLIDES_SAMPLE_COUNT = 12
CALIBRATION_START_RATIO = 0.05
CALIBRATION_END_RATIO = 0.95
HASH_GRID_SIZE = 32  # 32x32 grayscale -> 1024-bit average hash
MIN_SCENE_THRESHOLD = 0.05
MAX_SCENE_THRESHOLD = 0.3
UNCALIBRATED_THRESHOLD = 0.2

# Segmented scene detection
SCENE_SEGMENT_SECONDS = 60.0

# Timeouts (seconds)
DEFAULT_REQUEST_TIMEOUT = 120.0
YT_DLP_TIMEOUT = 300.0  # Floor for downloads, they are long-running
FFMPEG_TIMEOUT_FALLBACK = 300.0  # Floor for full-segment scene scoring
FFPROBE_TIMEOUT = 30.0
TESSERACT_TIMEOUT = 120.0
REFINE_CANDIDATE_TIMEOUT = 12.0
STDERR_TAIL_BYTES = 8192

# yt-dlp format selectors
# Detection only needs a low resolution proxy.
DEFAULT_YT_DLP_FORMAT_DETECT = (
    "worstvideo[height>=240][vcodec^=avc1]/worstvideo[height>=240]"
    "/bestvideo[height<=360]/best[height<=360]/worst"
)
# Prefer broadly-decodable H.264/MP4 for crisp stills (some "bestvideo" picks are AV1).
DEFAULT_YT_DLP_FORMAT_EXTRACT = (
    "bestvideo[height<=720][vcodec^=avc1][ext=mp4]/best[height<=720][vcodec^=avc1][ext=mp4]"
    "/bestvideo[height<=720][ext=mp4]/best[height<=720]"
)

# Frame extraction
SEEK_PAD_SECONDS = 8.0
FRAME_ADJUST_RANGE_SECONDS = 10.0
FRAME_ADJUST_STEP_SECONDS = 2.0
FRAME_MIN_BRIGHTNESS = 0.24
FRAME_MIN_CONTRAST = 0.16
FIRST_SLIDE_MIN_BRIGHTNESS = 0.58
FIRST_SLIDE_MIN_CONTRAST = 0.2
FIRST_SLIDE_MAX_TIMESTAMP = 8.0
MIN_IMPROVE_DELTA = 0.03
FIRST_SLIDE_MIN_IMPROVE_DELTA = 0.015

# Output files
MANIFEST_FILENAME = "slides.json"
SLIDE_FILENAME_PREFIX = "slide_"
IMAGE_FORMAT = "png"

# Media file extensions treated as directly playable
DIRECT_MEDIA_EXTENSIONS = (
    ".mp4", ".m4v", ".mov", ".webm", ".mkv", ".avi",
    ".m3u8", ".mpd", ".ts", ".flv", ".ogv", ".wmv",
)
