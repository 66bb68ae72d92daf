"""本地容器服务：以 `docker run` 方式启动后端镜像。"""

from __future__ import annotations

import json
import logging
import subprocess

from broker.domain.services.base import BaseService, InvocationResult

logger = logging.getLogger(__name__)


class LocalDockerService(BaseService):
    """在本机 Docker 中运行服务镜像，镜像通过回调上报结果。"""
    docker_binary: str = "docker"
    timeout_seconds: float = 60.0

    def build_command(self) -> list[str]:
        """构造容器启动命令，操作以 JSON 参数传入。"""
        command = [self.docker_binary, "run", "--rm"]
        for key, value in sorted((self.descriptor.params.get("env") or {}).items()):
            command.extend(["-e", f"{key}={value}"])
        command.append(str(self._param("image")))
        command.extend(["--harmony-action", "invoke", "--harmony-input", json.dumps(self.operation.to_dict())])
        return command

    def invoke(self) -> InvocationResult:
        command = self.build_command()
        try:
            result = subprocess.run(command, capture_output=True, text=True, timeout=self.timeout_seconds)
        except subprocess.TimeoutExpired as exc:
            raise RuntimeError(f"service {self.name} timed out after {self.timeout_seconds}s") from exc
        except OSError as exc:
            raise RuntimeError(f"unable to start docker for service {self.name}: {exc}") from exc
        if result.returncode != 0:
            logger.warning(
                "docker backend exited with error",
                extra={
                    "event": "service.invoke.failed",
                    "external_service": self.name,
                    "op": "docker run",
                    "payload_preview": result.stderr,
                },
            )
            raise RuntimeError(f"service {self.name} exited with code {result.returncode}")
        return InvocationResult(accepted=True, details={"stdout": result.stdout})
