# Copyright 2023 Google LLC
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
# ==============================================================================
"""Prometheus metrics for requests, errors and de-identification jobs."""
import enum
from typing import Any, Optional

import prometheus_client

from shared_libs.logging_lib import cloud_logging_client

_NAMESPACE = 'dicom_deidentifier'


def _label(value: Any) -> str:
  if isinstance(value, enum.Enum):
    return str(value.value)
  return str(value)


class MetricsSink:
  """Owns a private registry; pass one instance to every component."""

  def __init__(
      self, registry: Optional[prometheus_client.CollectorRegistry] = None
  ):
    self._registry = (
        registry
        if registry is not None
        else prometheus_client.CollectorRegistry(auto_describe=True)
    )
    self._request_count = prometheus_client.Counter(
        'http_request_count',
        'Total number of requests by route',
        ['method', 'path'],
        namespace=_NAMESPACE,
        registry=self._registry,
    )
    self._request_seconds = prometheus_client.Histogram(
        'http_request_seconds',
        'Request duration in seconds by route',
        ['method', 'path'],
        namespace=_NAMESPACE,
        registry=self._registry,
    )
    self._error_count = prometheus_client.Counter(
        'http_error_count',
        'Total number of errors by error kind',
        ['code'],
        namespace=_NAMESPACE,
        registry=self._registry,
    )
    self._job_count = prometheus_client.Counter(
        'deid_job_count',
        'De-identification jobs by terminal state',
        ['state'],
        namespace=_NAMESPACE,
        registry=self._registry,
    )

  @property
  def registry(self) -> prometheus_client.CollectorRegistry:
    return self._registry

  def track_request(self, method: str, path: str, seconds: float) -> None:
    self._request_count.labels(method=method, path=path).inc()
    self._request_seconds.labels(method=method, path=path).observe(seconds)

  def track_error(self, kind: Any) -> None:
    self._error_count.labels(code=_label(kind)).inc()

  def track_job(self, state: Any) -> None:
    self._job_count.labels(state=_label(state)).inc()

  def exposition(self) -> bytes:
    return prometheus_client.generate_latest(self._registry)

  def start_http_server(self, port: int) -> None:
    """Serves /metrics for this sink's registry on a background thread."""
    prometheus_client.start_http_server(port, registry=self._registry)
    cloud_logging_client.info('Metrics server started.', {'port': port})
