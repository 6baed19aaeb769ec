# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeboot/kube/client.py
from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional

import urllib3
from kubernetes import client, config
from kubernetes.client.rest import ApiException

from ..utils.retry import ErrorClass, ExponentialRetryPolicy, RetryPolicy

log = logging.getLogger("kubeboot")

TRANSIENT_STATUS = {429, 500, 502, 503, 504}


def classify_api_error(exc: BaseException) -> ErrorClass:
    """
    Throttling, server-side and connection errors are worth retrying;
    everything else (bad request, forbidden, not found, conflict) is not.
    """
    if isinstance(exc, ApiException):
        return ErrorClass.TRANSIENT if exc.status in TRANSIENT_STATUS else ErrorClass.FATAL
    if isinstance(exc, (urllib3.exceptions.HTTPError, ConnectionError, TimeoutError)):
        return ErrorClass.TRANSIENT
    return ErrorClass.FATAL


def _deployment_ready(obj) -> bool:
    desired = obj.spec.replicas if obj.spec.replicas is not None else 1
    status = obj.status
    return (status.available_replicas or 0) >= desired and (status.updated_replicas or 0) >= desired


def _daemonset_ready(obj) -> bool:
    status = obj.status
    desired = status.desired_number_scheduled or 0
    return desired > 0 and (status.number_available or 0) >= desired


def _statefulset_ready(obj) -> bool:
    desired = obj.spec.replicas if obj.spec.replicas is not None else 1
    return (obj.status.ready_replicas or 0) >= desired


class KubeClient:
    """
    Thin wrapper over the kubernetes CoreV1 and AppsV1 APIs.

    Every API call goes through ``policy``; readiness waits poll until the
    object reports ready or ``timeout`` seconds pass.
    """

    def __init__(
        self,
        core: client.CoreV1Api,
        apps: client.AppsV1Api,
        *,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.core = core
        self.apps = apps
        self.policy = policy or ExponentialRetryPolicy(5, classifier=classify_api_error, sleep=sleep)
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_kubeconfig(cls, path: Path, *, context: Optional[str] = None, **kwargs) -> "KubeClient":
        api = config.new_client_from_config(config_file=str(path), context=context)
        return cls(client.CoreV1Api(api), client.AppsV1Api(api), **kwargs)

    def _call(self, fn, *args, **kwargs):
        return self.policy.invoke(lambda: fn(*args, **kwargs))

    # ------------------ readiness ------------------

    def _wait(self, kind: str, read, ready, namespace: str, name: str, timeout: float, poll_interval: float) -> None:
        deadline = self._clock() + timeout
        while True:
            try:
                obj = self._call(read, name, namespace)
                if ready(obj):
                    log.debug("%s %s/%s is ready", kind, namespace, name)
                    return
            except ApiException as e:
                if e.status != 404:
                    raise
            if self._clock() >= deadline:
                raise TimeoutError(f"Timeout waiting for {kind} {namespace}/{name}")
            self._sleep(poll_interval)

    def wait_for_deployment(self, namespace: str, name: str, timeout: float = 300, poll_interval: float = 2.0) -> None:
        self._wait("deployment", self.apps.read_namespaced_deployment_status, _deployment_ready,
                   namespace, name, timeout, poll_interval)

    def wait_for_daemonset(self, namespace: str, name: str, timeout: float = 300, poll_interval: float = 2.0) -> None:
        self._wait("daemonset", self.apps.read_namespaced_daemon_set_status, _daemonset_ready,
                   namespace, name, timeout, poll_interval)

    def wait_for_statefulset(self, namespace: str, name: str, timeout: float = 300, poll_interval: float = 2.0) -> None:
        self._wait("statefulset", self.apps.read_namespaced_stateful_set_status, _statefulset_ready,
                   namespace, name, timeout, poll_interval)

    # ------------------ objects ------------------

    def create_namespace(self, name: str) -> bool:
        """Returns False when the namespace already exists."""
        body = client.V1Namespace(metadata=client.V1ObjectMeta(name=name))
        try:
            self._call(self.core.create_namespace, body)
        except ApiException as e:
            if e.status == 409:
                return False
            raise
        return True

    def upsert_secret(self, namespace: str, name: str, data: Dict[str, str]) -> None:
        body = client.V1Secret(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace),
            string_data=dict(data),
            type="Opaque",
        )
        try:
            self._call(self.core.replace_namespaced_secret, name, namespace, body)
        except ApiException as e:
            if e.status != 404:
                raise
            self._call(self.core.create_namespaced_secret, namespace, body)

    # ------------------ nodes ------------------

    def list_node_names(self) -> List[str]:
        resp = self._call(self.core.list_node)
        return [item.metadata.name for item in resp.items]

    def label_node(self, name: str, labels: Dict[str, Optional[str]]) -> None:
        """A ``None`` value removes the label."""
        self._call(self.core.patch_node, name, {"metadata": {"labels": dict(labels)}})

    def _taints(self, name: str) -> List[dict]:
        node = self._call(self.core.read_node, name)
        return [
            {"key": t.key, "value": t.value, "effect": t.effect}
            for t in (node.spec.taints or [])
        ]

    def taint_node(self, name: str, key: str, value: Optional[str], effect: str) -> None:
        taints = [t for t in self._taints(name) if not (t["key"] == key and t["effect"] == effect)]
        taints.append({"key": key, "value": value, "effect": effect})
        self._call(self.core.patch_node, name, {"spec": {"taints": taints}})

    def remove_taint(self, name: str, key: str) -> bool:
        """Returns False when the node had no taint with ``key``."""
        current = self._taints(name)
        kept = [t for t in current if t["key"] != key]
        if len(kept) == len(current):
            return False
        self._call(self.core.patch_node, name, {"spec": {"taints": kept}})
        return True
