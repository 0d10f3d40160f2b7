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
"""Drives a de-identification job through its lifecycle.

  create source store -> ingest instances -> create destination store ->
  request de-identify -> poll operation -> request export (optional)

Jobs run either on the calling thread (run_job) or on the coordinator's
worker pool (submit). Every failure is terminal for the job.
"""
from __future__ import annotations

import concurrent.futures
import dataclasses
import threading
from typing import Any, List, Mapping, Optional, Sequence

from dicom_deidentifier import deid_errors
from dicom_deidentifier import deid_interfaces
from dicom_deidentifier import deid_types
from dicom_deidentifier import error_reporter
from dicom_deidentifier import metrics
from dicom_deidentifier import operation_poller
from shared_libs.logging_lib import cloud_logging_client


@dataclasses.dataclass(frozen=True)
class DeidJobRequest:
  """De-identification job parameters.

  Attributes:
    source_store_id: Store created to receive identified instances.
    destination_store_id: Store created to receive de-identified instances.
    dicoms: Local instances uploaded to source store.
    import_gcs_uri: Optional GCS URI (wildcards allowed) imported into source.
    export_gcs_uri: Optional GCS prefix de-identified instances are exported
      to.
  """

  source_store_id: str
  destination_store_id: str
  dicoms: Sequence[deid_types.Dicom] = ()
  import_gcs_uri: Optional[str] = None
  export_gcs_uri: Optional[str] = None


@dataclasses.dataclass
class DeidJob:
  request: DeidJobRequest
  state: Optional[operation_poller.PollState] = None
  state_history: List[operation_poller.PollState] = dataclasses.field(
      default_factory=list
  )
  source_store: Optional[deid_types.DicomStore] = None
  destination_store: Optional[deid_types.DicomStore] = None
  operation_name: str = ''
  operation: Optional[Mapping[str, Any]] = None
  export_operation_name: str = ''
  error: Optional[BaseException] = None

  def set_state(self, state: operation_poller.PollState) -> None:
    self.state = state
    self.state_history.append(state)


class DeidentificationJobCoordinator:
  """Runs de-identification jobs against a DicomStoreLifecycle."""

  def __init__(
      self,
      store_service: deid_interfaces.DicomStoreLifecycle,
      poll_policy: operation_poller.PollPolicy,
      metrics_sink: Optional[metrics.MetricsSink] = None,
      reporter: Optional[error_reporter.ErrorReporter] = None,
      max_workers: int = 4,
  ):
    self._store_service = store_service
    self._poll_policy = poll_policy
    self._metrics = metrics_sink
    self._reporter = (
        reporter if reporter is not None else error_reporter.NullErrorReporter()
    )
    self._max_workers = max_workers
    self._executor = None
    self._lock = threading.Lock()
    self._running_tokens = set()

  def __enter__(self) -> DeidentificationJobCoordinator:
    return self

  def __exit__(self, *args) -> None:
    self.shutdown(cancel_running=True)

  def _wait_for_operation(
      self,
      job: DeidJob,
      operation_name: str,
      cancel_token: operation_poller.CancellationToken,
      track_state: bool,
  ) -> Mapping[str, Any]:
    poller = operation_poller.OperationPoller(
        self._store_service.get_operation,
        self._poll_policy,
        on_state_change=job.set_state if track_state else None,
    )
    return poller.wait(operation_name, cancel_token)

  def _run(
      self, job: DeidJob, cancel_token: operation_poller.CancellationToken
  ) -> None:
    request = job.request
    if request.source_store_id == request.destination_store_id:
      raise deid_errors.DeidError(
          deid_errors.ErrorKind.INVALID,
          'De-identification destination must differ from source store.',
      )
    job.source_store = self._store_service.create_dicom_store(
        request.source_store_id
    )
    if request.dicoms:
      self._store_service.create_dicom_instances(
          job.source_store, *request.dicoms
      )
    if request.import_gcs_uri:
      import_operation = self._store_service.import_dicom_instance(
          job.source_store, request.import_gcs_uri
      )
      self._wait_for_operation(job, import_operation, cancel_token, False)
    job.destination_store = self._store_service.create_dicom_store(
        request.destination_store_id
    )
    if cancel_token.is_cancelled:
      raise deid_errors.OperationCancelledError(
          'Job cancelled before de-identification was requested.'
      )
    job.operation_name = self._store_service.trigger_deidentify(
        job.source_store, job.destination_store
    )
    job.operation = self._wait_for_operation(
        job, job.operation_name, cancel_token, True
    )
    if request.export_gcs_uri:
      # Export completes asynchronously; job does not wait for it.
      job.export_operation_name = self._store_service.export_dicom_instance(
          job.destination_store, request.export_gcs_uri
      )

  def run_job(
      self,
      request: DeidJobRequest,
      cancel_token: Optional[operation_poller.CancellationToken] = None,
  ) -> DeidJob:
    """Runs job on calling thread.

    Args:
      request: Job to run.
      cancel_token: Optional token used to abort the job.

    Returns:
      Succeeded job.

    Raises:
      DeidError: Job failed; job state is FAILED.
    """
    return self.run(DeidJob(request=request), cancel_token)

  def run(
      self,
      job: DeidJob,
      cancel_token: Optional[operation_poller.CancellationToken] = None,
  ) -> DeidJob:
    """Runs caller-owned job; job records progress if run raises."""
    if cancel_token is None:
      cancel_token = operation_poller.CancellationToken()
    request = job.request
    log_struct = {
        'source_store_id': request.source_store_id,
        'destination_store_id': request.destination_store_id,
    }
    cloud_logging_client.set_log_signature(log_struct)
    cloud_logging_client.info(
        'Starting de-identification job.',
        {
            'dicom_count': len(request.dicoms),
            'import_gcs_uri': request.import_gcs_uri,
            'export_gcs_uri': request.export_gcs_uri,
        },
    )
    with self._lock:
      self._running_tokens.add(cancel_token)
    try:
      self._run(job, cancel_token)
    except Exception as exp:
      job.error = exp
      if job.state != operation_poller.PollState.FAILED:
        job.set_state(operation_poller.PollState.FAILED)
      self._reporter.report_error(exp, log_struct)
      if not self._reporter.writes_log:
        cloud_logging_client.error(
            'De-identification job failed.',
            {'operation_name': job.operation_name},
            exp,
        )
      raise
    finally:
      with self._lock:
        self._running_tokens.discard(cancel_token)
      if self._metrics is not None and job.state is not None:
        self._metrics.track_job(job.state)
      cloud_logging_client.clear_log_signature()
    cloud_logging_client.info(
        'De-identification job succeeded.',
        {
            'operation_name': job.operation_name,
            'export_operation_name': job.export_operation_name,
        },
    )
    return job

  def submit(
      self,
      request: DeidJobRequest,
      cancel_token: Optional[operation_poller.CancellationToken] = None,
  ) -> concurrent.futures.Future:
    """Runs job on coordinator worker pool; future resolves to DeidJob."""
    if cancel_token is None:
      cancel_token = operation_poller.CancellationToken()
    with self._lock:
      if self._executor is None:
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=self._max_workers, thread_name_prefix='deid_job'
        )
      return self._executor.submit(self.run_job, request, cancel_token)

  def shutdown(self, cancel_running: bool = False) -> None:
    """Stops worker pool; optionally cancels running jobs."""
    with self._lock:
      executor = self._executor
      self._executor = None
      if cancel_running:
        for token in self._running_tokens:
          token.cancel()
    if executor is not None:
      executor.shutdown(wait=True, cancel_futures=cancel_running)
