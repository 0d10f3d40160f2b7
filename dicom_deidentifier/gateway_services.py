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
"""Collaborators injected into the request gateway's flask app."""
import dataclasses

import flask

from dicom_deidentifier import deid_interfaces
from dicom_deidentifier import deid_types
from dicom_deidentifier import error_reporter
from dicom_deidentifier import metrics

_EXTENSION_KEY = 'dicom_deidentifier'


@dataclasses.dataclass(frozen=True)
class GatewayServices:
  url_signer: deid_interfaces.UrlSigner
  metrics: metrics.MetricsSink
  error_reporter: error_reporter.ErrorReporter
  storage_bucket_name: str

  @property
  def bucket(self) -> deid_types.CloudStorageBucket:
    return deid_types.CloudStorageBucket(self.storage_bucket_name)


def install(app: flask.Flask, services: GatewayServices) -> None:
  app.extensions[_EXTENSION_KEY] = services


def current() -> GatewayServices:
  """Returns services of the app handling the current request."""
  return flask.current_app.extensions[_EXTENSION_KEY]
