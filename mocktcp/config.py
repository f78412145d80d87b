"""
Core configuration management
"""
from pathlib import Path
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Mock server process settings"""

    # Listener settings
    host: str = "0.0.0.0"
    default_port: int = 6789
    listen_backlog: int = 50
    accept_poll_interval_sec: float = 0.5

    # Configuration file
    project_root: Path = Path(__file__).parent.parent
    configuration_file: Path = Path("configuration") / "mocktcpserver.json"
    initialise_configuration: bool = True  # Write defaults when the file is missing

    # Logging
    log_dir: Path = project_root / "logs"
    log_to_file: bool = False
    log_level: str = "INFO"
    log_json: bool = True  # False renders plain console lines

    # Client connections
    read_timeout_sec: float = 60.0  # Stalled peers are logged, then reading resumes
    recv_buffer_size: int = 4096
    close_join_timeout_sec: float = 10.0

    # Outbound dispatch
    connect_timeout_sec: float = 5.0
    ack_timeout_sec: float = 5.0
    dispatch_wait_for_ack: bool = False

    class Config:
        env_prefix = "MOCKTCP_"
        env_file = ".env"


settings = Settings()
