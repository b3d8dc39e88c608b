from __future__ import annotations

from pydantic import BaseModel, Field

from .store import DeploymentSpec, HealthCheck, RolloutPolicy


class HealthCheckModel(BaseModel):
    path: str = Field("/health", description="Health endpoint path")
    timeout_s: float = Field(2.0, gt=0, le=60)
    failure_threshold: int = Field(2, ge=1, le=100, description="Consecutive failed probes before replacement")


class RolloutPolicyModel(BaseModel):
    canary_percent: int = Field(10, ge=1, le=100)
    step_percent: int = Field(25, ge=1, le=100)
    step_interval_s: int = Field(15, ge=0, le=3600, description="Seconds a phase must stay healthy")
    phase_timeout_s: int = Field(120, ge=1, le=3600, description="Seconds before an unhealthy phase rolls back")
    max_failures: int = Field(3, ge=0, le=100)
    min_healthy_percent: int = Field(100, ge=1, le=100)
    auto: bool = True


class ApplyRequest(BaseModel):
    name: str = Field(..., description="Application name (dns-safe)")
    image: str = Field(..., description="Image reference (name:tag)")
    internal_port: int = Field(..., ge=1, le=65535, description="Port the workload listens on")
    replicas: int = Field(1, ge=0, le=100)
    health: HealthCheckModel = Field(default_factory=HealthCheckModel)
    env: dict[str, str] = Field(default_factory=dict)
    rollout: RolloutPolicyModel = Field(default_factory=RolloutPolicyModel)

    def to_spec(self) -> DeploymentSpec:
        return DeploymentSpec(
            name=self.name,
            image=self.image,
            internal_port=self.internal_port,
            replicas=self.replicas,
            health=HealthCheck(**self.health.model_dump()),
            env=dict(self.env),
            rollout=RolloutPolicy(**self.rollout.model_dump()),
        )


class ScaleRequest(BaseModel):
    replicas: int = Field(..., ge=0, le=100)


class AbortRequest(BaseModel):
    reason: str = "aborted by operator"
