import os
from dataclasses import dataclass

@dataclass
class Settings:
    k8s_api_base_url: str = os.getenv("K8S_API_BASE_URL", "")
    k8s_namespace: str = os.getenv("K8S_NAMESPACE", "default")
    verify_ssl: bool = os.getenv("K8S_VERIFY_SSL", "false").lower() == "true"
    k8s_bearer_token: str | None = os.getenv("K8S_BEARER_TOKEN") or None
    request_timeout: float = float(os.getenv("K8S_REQUEST_TIMEOUT", "30"))

    poll_interval: float = float(os.getenv("KUBECONVERGE_POLL_INTERVAL", "2"))
    retry_base: float = float(os.getenv("KUBECONVERGE_RETRY_BASE", "1"))
    retry_cap: float = float(os.getenv("KUBECONVERGE_RETRY_CAP", "30"))
    retry_attempts: int = int(os.getenv("KUBECONVERGE_RETRY_ATTEMPTS", "5"))
    state_file: str = os.getenv("KUBECONVERGE_STATE_FILE", ".kubeconverge/last-run.json")
    log_level: str = os.getenv("KUBECONVERGE_LOG_LEVEL", "INFO")

settings = Settings()
