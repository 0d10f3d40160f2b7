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
"""HTTP endpoints of the request gateway."""
import http

import flask

from dicom_deidentifier import deid_errors
from dicom_deidentifier import deid_types
from dicom_deidentifier import flask_util
from dicom_deidentifier import gateway_services
from dicom_deidentifier import logging_util
from shared_libs.logging_lib import cloud_logging_client

# Verb signed URLs issued over HTTP are scoped to; clients cannot choose it.
PRESIGNED_URL_HTTP_METHOD = flask_util.POST

SIGNED_URL_ERROR = 'signed URL could not be generated'
START_ANONYMISATION_ERROR = 'de-identification cannot be started over HTTP'

request_gateway = flask.Blueprint('request_gateway', __name__)


@request_gateway.route(
    '/get_presigned_url', methods=['POST'], endpoint='get_presigned_url'
)
@logging_util.log_exceptions
def get_presigned_url() -> flask.Response:
  """Returns signed URL for object named in request body."""
  services = gateway_services.current()
  try:
    obj = deid_types.CloudStorageObject.from_json(flask_util.get_json())
  except deid_errors.DeidError as exp:
    return flask_util.error_response(exp)
  try:
    signed_url = services.url_signer.generate_presigned_bucket_url(
        services.bucket, obj, PRESIGNED_URL_HTTP_METHOD
    )
  except deid_errors.DeidError as exp:
    return flask_util.error_response(
        deid_errors.DeidError(deid_errors.ErrorKind.INTERNAL, SIGNED_URL_ERROR),
        cause=exp,
    )
  cloud_logging_client.info(
      'Issued signed URL.',
      {'bucket': services.storage_bucket_name, 'object': obj.name},
  )
  return flask_util.json_response(signed_url.to_json(), http.HTTPStatus.OK)


@request_gateway.route(
    '/start_anonymisation', methods=['POST'], endpoint='start_anonymisation'
)
@logging_util.log_exceptions
def start_anonymisation() -> flask.Response:
  return flask_util.error_response(
      deid_errors.DeidError(
          deid_errors.ErrorKind.NOT_IMPLEMENTED, START_ANONYMISATION_ERROR
      )
  )
