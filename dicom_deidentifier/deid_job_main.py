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
"""Runs one de-identification job from the command line.

python3 -m dicom_deidentifier.deid_job_main \
    --project_id=my-prj --location=us-central1 --dataset_id=my-ds \
    --source_dicom_store=identified --destination_dicom_store=deidentified \
    --dicom_files=/data/a.dcm,/data/b.dcm
"""
import signal
from typing import Optional, Sequence

from absl import app as absl_app
from absl import flags

from dicom_deidentifier import deid_errors
from dicom_deidentifier import deid_flags
from dicom_deidentifier import deid_interfaces
from dicom_deidentifier import deid_job_coordinator
from dicom_deidentifier import deid_types
from dicom_deidentifier import error_reporter
from dicom_deidentifier import healthcare_gateway
from dicom_deidentifier import metrics
from dicom_deidentifier import operation_poller
from shared_libs.logging_lib import cloud_logging_client

SOURCE_DICOM_STORE_FLG = flags.DEFINE_string(
    'source_dicom_store',
    None,
    'DICOM store created to receive identified instances.',
)
DESTINATION_DICOM_STORE_FLG = flags.DEFINE_string(
    'destination_dicom_store',
    None,
    'DICOM store created to receive de-identified instances.',
)
DICOM_FILES_FLG = flags.DEFINE_list(
    'dicom_files', [], 'Local DICOM instances uploaded to the source store.'
)
IMPORT_GCS_URI_FLG = flags.DEFINE_string(
    'import_gcs_uri',
    None,
    'GCS URI (wildcards allowed) imported into the source store.',
)
EXPORT_GCS_URI_FLG = flags.DEFINE_string(
    'export_gcs_uri',
    None,
    'GCS prefix de-identified instances are exported to.',
)
DELETE_STORES_ON_FAILURE_FLG = flags.DEFINE_boolean(
    'delete_stores_on_failure',
    False,
    'Delete destination store created by a failed job. Source store is kept.',
)

_JOB_FLAGS = (SOURCE_DICOM_STORE_FLG, DESTINATION_DICOM_STORE_FLG)


def build_request() -> deid_job_coordinator.DeidJobRequest:
  return deid_job_coordinator.DeidJobRequest(
      source_store_id=SOURCE_DICOM_STORE_FLG.value,
      destination_store_id=DESTINATION_DICOM_STORE_FLG.value,
      dicoms=tuple(
          deid_types.Dicom.from_path(path) for path in DICOM_FILES_FLG.value
      ),
      import_gcs_uri=IMPORT_GCS_URI_FLG.value or None,
      export_gcs_uri=EXPORT_GCS_URI_FLG.value or None,
  )


def install_signal_handlers(
    cancel_token: operation_poller.CancellationToken,
) -> None:
  """SIGINT and SIGTERM cancel the running job instead of killing it."""

  def _cancel(signum, unused_frame):
    cloud_logging_client.warning(
        'Signal received; cancelling de-identification job.',
        {'signal': signal.Signals(signum).name},
    )
    cancel_token.cancel()

  signal.signal(signal.SIGINT, _cancel)
  signal.signal(signal.SIGTERM, _cancel)


def _delete_destination_store(
    store_service: deid_interfaces.DicomStoreLifecycle,
    job: deid_job_coordinator.DeidJob,
) -> None:
  if job.destination_store is None:
    return
  store_id = job.destination_store.store_id
  try:
    store_service.delete_dicom_store(store_id)
  except deid_errors.DeidError as exp:
    cloud_logging_client.error(
        'Could not delete destination store of failed job.',
        {'store_id': store_id},
        exp,
    )
    return
  cloud_logging_client.info(
      'Deleted destination store of failed job.', {'store_id': store_id}
  )


def run_deid_job(
    store_service: deid_interfaces.DicomStoreLifecycle,
    request: deid_job_coordinator.DeidJobRequest,
    poll_policy: operation_poller.PollPolicy,
    cancel_token: Optional[operation_poller.CancellationToken] = None,
    delete_stores_on_failure: bool = False,
    reporter: Optional[error_reporter.ErrorReporter] = None,
    metrics_sink: Optional[metrics.MetricsSink] = None,
) -> deid_job_coordinator.DeidJob:
  """Runs job to completion; returned job's state tells if it succeeded."""
  job = deid_job_coordinator.DeidJob(request=request)
  with deid_job_coordinator.DeidentificationJobCoordinator(
      store_service, poll_policy, metrics_sink, reporter, max_workers=1
  ) as coordinator:
    try:
      coordinator.run(job, cancel_token)
    except deid_errors.DeidError:
      if delete_stores_on_failure:
        _delete_destination_store(store_service, job)
  return job


def main(argv: Sequence[str]) -> int:
  if len(argv) > 1:
    raise absl_app.UsageError('Too many command-line arguments.')
  try:
    deid_flags.validate_required_config(
        (*deid_flags.DATASET_FLAGS, *_JOB_FLAGS)
    )
  except deid_errors.MissingConfigError as exp:
    cloud_logging_client.critical('Job configuration is incomplete.', exp)
    return 1
  if deid_flags.ERROR_REPORTING_ENABLED_FLG.value:
    reporter = error_reporter.CloudLoggingErrorReporter()
  else:
    reporter = error_reporter.NullErrorReporter()
  poll_policy = deid_flags.poll_policy()
  store_service = healthcare_gateway.HealthcareGateway(
      deid_flags.dataset_path(), poll_policy
  )
  cancel_token = operation_poller.CancellationToken()
  install_signal_handlers(cancel_token)
  job = run_deid_job(
      store_service,
      build_request(),
      poll_policy,
      cancel_token,
      DELETE_STORES_ON_FAILURE_FLG.value,
      reporter,
  )
  if job.state != operation_poller.PollState.SUCCEEDED:
    return 1
  return 0


def run() -> None:
  absl_app.run(main)


if __name__ == '__main__':
  run()
