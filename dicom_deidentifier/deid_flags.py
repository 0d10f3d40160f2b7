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
"""Flags used by the DICOM de-identifier server and job runner."""
import os
from typing import Sequence

from absl import flags

from dicom_deidentifier import deid_errors
from dicom_deidentifier import deid_types
from dicom_deidentifier import operation_poller
from shared_libs.flags import flag_utils
from shared_libs.flags import secret_flag_utils

# Env naming path to the service account key used to sign URLs. Read at
# signing time, not at flag parse time.
SERVICE_ACCOUNT_ENV = 'SERVICE_ACCOUNT'

PROJECT_ID_FLG = flags.DEFINE_string(
    'project_id',
    secret_flag_utils.get_secret_or_env('GCLOUD_PROJECT_ID', None),
    'GCP project hosting the Healthcare API dataset.',
)
LOCATION_FLG = flags.DEFINE_string(
    'location',
    secret_flag_utils.get_secret_or_env('GCLOUD_PROJECT_LOCATION', None),
    'Location of the Healthcare API dataset, e.g. us-central1.',
)
DATASET_ID_FLG = flags.DEFINE_string(
    'dataset_id',
    secret_flag_utils.get_secret_or_env('GCLOUD_PROJECT_DATASET_ID', None),
    'Healthcare API dataset DICOM stores are created in.',
)
STORAGE_BUCKET_NAME_FLG = flags.DEFINE_string(
    'storage_bucket_name',
    secret_flag_utils.get_secret_or_env('STORAGE_BUCKET_NAME', None),
    'GCS bucket signed URLs are issued against.',
)
BIND_ADDRESS_FLG = flags.DEFINE_string(
    'bind_address',
    secret_flag_utils.get_secret_or_env('HTTP_ADDR', '0.0.0.0:8080'),
    'Address (host:port) the HTTP server binds to.',
)
DOMAIN_FLG = flags.DEFINE_string(
    'domain',
    secret_flag_utils.get_secret_or_env('DOMAIN', ''),
    'Public domain the server is reached at; logged only.',
)
METRICS_PORT_FLG = flags.DEFINE_integer(
    'metrics_port',
    int(secret_flag_utils.get_secret_or_env('PORT', '6060')),
    'Port serving Prometheus /metrics.',
)
ORIGINS_FLG = flags.DEFINE_list(
    'origins',
    flag_utils.str_to_list(
        secret_flag_utils.get_secret_or_env('ORIGINS', 'http://localhost:5000')
    ),
    'Origins allowed to make cross origin requests.',
)
GUNICORN_WORKERS_FLG = flags.DEFINE_integer(
    'gunicorn_workers',
    int(secret_flag_utils.get_secret_or_env('GUNICORN_WORKERS', '1')),
    'Number of gunicorn worker processes.',
)
GUNICORN_THREADS_FLG = flags.DEFINE_integer(
    'gunicorn_threads',
    int(secret_flag_utils.get_secret_or_env('GUNICORN_THREADS', '8')),
    'Number of threads per gunicorn worker.',
)
SHUTDOWN_TIMEOUT_SEC_FLG = flags.DEFINE_integer(
    'shutdown_timeout_sec',
    int(secret_flag_utils.get_secret_or_env('SHUTDOWN_TIMEOUT_SEC', '1')),
    'Seconds in-flight requests are given to drain when the server stops.',
)
DEID_POLL_INTERVAL_SEC_FLG = flags.DEFINE_float(
    'deid_poll_interval_sec',
    float(secret_flag_utils.get_secret_or_env('DEID_POLL_INTERVAL_SEC', '1')),
    'Seconds between long-running operation status checks.',
)
DEID_POLL_MAX_ATTEMPTS_FLG = flags.DEFINE_integer(
    'deid_poll_max_attempts',
    int(secret_flag_utils.get_secret_or_env('DEID_POLL_MAX_ATTEMPTS', '0')),
    'Maximum operation status checks; 0 = no attempt cap.',
)
DEID_POLL_TIMEOUT_SEC_FLG = flags.DEFINE_float(
    'deid_poll_timeout_sec',
    float(secret_flag_utils.get_secret_or_env('DEID_POLL_TIMEOUT_SEC', '86400')),
    'Maximum seconds spent waiting for an operation; 0 = no deadline.',
)
ERROR_REPORTING_ENABLED_FLG = flags.DEFINE_boolean(
    'error_reporting_enabled',
    secret_flag_utils.get_bool_secret_or_env('ERROR_REPORTING_ENABLED', True),
    'Report internal errors to Cloud Error Reporting via structured logs.',
)

DATASET_FLAGS = (PROJECT_ID_FLG, LOCATION_FLG, DATASET_ID_FLG)
SERVER_FLAGS = (
    *DATASET_FLAGS,
    STORAGE_BUCKET_NAME_FLG,
    BIND_ADDRESS_FLG,
    METRICS_PORT_FLG,
)


def validate_required_config(
    required: Sequence[flags.FlagHolder], require_service_account: bool = False
) -> None:
  """Raises MissingConfigError naming every undefined required value."""
  missing = [flg.name for flg in required if flg.value in (None, '')]
  if require_service_account and not secret_flag_utils.get_secret_or_env(
      SERVICE_ACCOUNT_ENV, ''
  ):
    missing.append(SERVICE_ACCOUNT_ENV)
  if missing:
    raise deid_errors.MissingConfigError(missing)


def dataset_path() -> deid_types.DatasetPath:
  validate_required_config(DATASET_FLAGS)
  return deid_types.DatasetPath(
      project=PROJECT_ID_FLG.value,
      location=LOCATION_FLG.value,
      dataset=DATASET_ID_FLG.value,
  )


def poll_policy() -> operation_poller.PollPolicy:
  return operation_poller.PollPolicy(
      interval_sec=DEID_POLL_INTERVAL_SEC_FLG.value,
      max_attempts=DEID_POLL_MAX_ATTEMPTS_FLG.value,
      timeout_sec=DEID_POLL_TIMEOUT_SEC_FLG.value,
  )


def service_account_path() -> str:
  return os.path.expanduser(
      secret_flag_utils.get_secret_or_env(SERVICE_ACCOUNT_ENV, '')
  )
