import os
from typing import List, Mapping, Optional

from dotenv import load_dotenv


class Settings:
    """Runtime configuration, read from the environment (and a .env file)."""

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        env = os.environ if environ is None else environ

        self.asterisk_host = env.get("ASTERISK_HOST", "127.0.0.1")
        self.asterisk_port = int(env.get("ASTERISK_PORT", "5038"))
        self.asterisk_username = env.get("ASTERISK_USERNAME", "admin")
        self.asterisk_password = env.get("ASTERISK_PASSWORD", "admin")
        # Seconds to wait for an AMI action response.
        self.ami_timeout = float(env.get("AMI_TIMEOUT", "5"))
        # Backoff between attempts while the first AMI login keeps failing.
        self.ami_retry_delay = float(env.get("AMI_RETRY_DELAY", "2"))
        self.ami_retry_max_delay = float(env.get("AMI_RETRY_MAX_DELAY", "60"))

        self.host = env.get("HOST", "0.0.0.0")
        self.port = int(env.get("PORT", "3001"))
        self.log_level = env.get("LOG_LEVEL", "INFO").upper()
        self.cors_origins: List[str] = [
            origin.strip() for origin in env.get("CORS_ORIGINS", "*").split(",") if origin.strip()
        ]

        self.originate_context = env.get("ORIGINATE_CONTEXT", "outbound-calls")
        self.originate_timeout_ms = int(env.get("ORIGINATE_TIMEOUT_MS", "30000"))
        self.hold_context = env.get("HOLD_CONTEXT", "default")
        self.hold_exten = env.get("HOLD_EXTEN", "hold")
        self.resume_fallback_exten = env.get("RESUME_FALLBACK_EXTEN", "6001")
        self.recording_format = env.get("RECORDING_FORMAT", "wav")

        self.client_queue_size = int(env.get("CLIENT_QUEUE_SIZE", "100"))


def load_settings() -> Settings:
    load_dotenv()
    return Settings()
