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
"""WebSocket session used by clients uploading images for de-identification.

Each inbound message is a JSON envelope with a subject discriminator:

  {"subject": "get-signed-url", "name": "scan-1.dcm"}
  {"subject": "finished-image-upload"}

Recognized messages are echoed back after they are handled. An unrecognized
subject ends the session.
"""
import json
from typing import Any, Mapping, Union

import flask_sock
import simple_websocket

from dicom_deidentifier import deid_errors
from dicom_deidentifier import deid_types
from dicom_deidentifier import flask_util
from dicom_deidentifier import gateway_services
from dicom_deidentifier import logging_util
from shared_libs.logging_lib import cloud_logging_client

SUBJECT_KEY = 'subject'
GET_SIGNED_URL = 'get-signed-url'
FINISHED_IMAGE_UPLOAD = 'finished-image-upload'
URL_SIGNING_SUCCESS = 'success'
UPLOAD_FAILED_MESSAGE = json.dumps({'error': 'upload failed'})

# Verb signed URLs issued over the session are scoped to.
WEB_SOCKET_HTTP_METHOD = flask_util.PUT

sock = flask_sock.Sock()


class DeidentificationSession:
  """Handles messages received on one WebSocket connection."""

  def __init__(
      self, ws: Any, services: gateway_services.GatewayServices
  ):
    self._ws = ws
    self._services = services

  def run(self) -> None:
    while True:
      try:
        raw = self._ws.receive()
      except simple_websocket.ConnectionClosed:
        cloud_logging_client.info('WebSocket session closed by client.')
        return
      if not self.handle_message(raw):
        return

  def handle_message(self, raw: Union[str, bytes]) -> bool:
    """Handles message; returns False if session should end."""
    try:
      message = json.loads(raw)
    except (TypeError, ValueError) as exp:
      self._services.metrics.track_error(deid_errors.ErrorKind.INVALID)
      cloud_logging_client.warning('Could not decode WebSocket message.', exp)
      return False
    if not isinstance(message, Mapping):
      self._services.metrics.track_error(deid_errors.ErrorKind.INVALID)
      cloud_logging_client.warning(
          'WebSocket message is not a JSON object.', {'message': raw}
      )
      return False
    subject = message.get(SUBJECT_KEY)
    if subject == GET_SIGNED_URL:
      if not self._send_signed_url(message):
        return False
    elif subject == FINISHED_IMAGE_UPLOAD:
      cloud_logging_client.info('Client finished image upload.')
    else:
      cloud_logging_client.warning(
          'Unrecognized WebSocket message subject; closing session.',
          {SUBJECT_KEY: subject},
      )
      return False
    self._ws.send(raw)
    return True

  def _send_upload_failed(self) -> None:
    self._ws.send(UPLOAD_FAILED_MESSAGE)

  def _send_signed_url(self, message: Mapping[str, Any]) -> bool:
    try:
      obj = deid_types.CloudStorageObject.from_json(message)
    except deid_errors.DeidError as exp:
      self._services.metrics.track_error(exp.kind)
      cloud_logging_client.warning('Invalid signed URL request.', exp)
      self._send_upload_failed()
      return False
    try:
      signed_url = self._services.url_signer.generate_presigned_bucket_url(
          self._services.bucket, obj, WEB_SOCKET_HTTP_METHOD
      )
    except deid_errors.DeidError as exp:
      self._services.metrics.track_error(deid_errors.ErrorKind.INTERNAL)
      self._services.error_reporter.report_error(
          exp, {'subject': GET_SIGNED_URL, 'object': obj.name}
      )
      self._send_upload_failed()
      return False
    response = deid_types.SignedBucketURL(
        url=signed_url.url, status=URL_SIGNING_SUCCESS
    )
    self._ws.send(json.dumps(response.to_json()))
    cloud_logging_client.info(
        'Issued signed upload URL.',
        {'bucket': self._services.storage_bucket_name, 'object': obj.name},
    )
    return True


@sock.route('/start_deidentification')
@logging_util.log_exceptions
def start_deidentification(ws: simple_websocket.Server) -> None:
  DeidentificationSession(ws, gateway_services.current()).run()
