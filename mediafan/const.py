SUPPORTED_CONTENT_TYPES = [
    "video",
    "audio",
]

REMOTE_SCHEMES = [
    "http",
    "https",
]

# Output presets used by the command line entry point
PRESET_TASKS = [
    {
        "width": 1280,
        "height": 720,
        "encoder": "libx264",
        "format": "mp4",
        "output_file": "x264.mp4",
    },
    {
        "width": 1920,
        "height": 1080,
        "encoder": "libx265",
        "format": "mp4",
        "output_file": "x265.mp4",
    },
]
