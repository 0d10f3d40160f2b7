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
"""Tests for metrics."""
import concurrent.futures

from absl.testing import absltest
import mock
import prometheus_client

from dicom_deidentifier import deid_errors
from dicom_deidentifier import metrics
from dicom_deidentifier import operation_poller


class MetricsSinkTest(absltest.TestCase):

  def test_sinks_do_not_share_registry(self):
    first = metrics.MetricsSink()
    second = metrics.MetricsSink()
    first.track_error(deid_errors.ErrorKind.INVALID)
    self.assertIsNone(
        second.registry.get_sample_value(
            'dicom_deidentifier_http_error_count_total', {'code': 'invalid'}
        )
    )

  def test_track_request(self):
    sink = metrics.MetricsSink()
    sink.track_request('POST', '/get_presigned_url', 0.25)
    sink.track_request('POST', '/get_presigned_url', 0.5)
    labels = {'method': 'POST', 'path': '/get_presigned_url'}
    self.assertEqual(
        sink.registry.get_sample_value(
            'dicom_deidentifier_http_request_count_total', labels
        ),
        2,
    )
    self.assertEqual(
        sink.registry.get_sample_value(
            'dicom_deidentifier_http_request_seconds_sum', labels
        ),
        0.75,
    )

  def test_track_error_by_kind(self):
    sink = metrics.MetricsSink()
    sink.track_error(deid_errors.ErrorKind.INTERNAL)
    self.assertEqual(
        sink.registry.get_sample_value(
            'dicom_deidentifier_http_error_count_total', {'code': 'internal'}
        ),
        1,
    )

  def test_track_job_by_state(self):
    sink = metrics.MetricsSink()
    sink.track_job(operation_poller.PollState.SUCCEEDED)
    self.assertEqual(
        sink.registry.get_sample_value(
            'dicom_deidentifier_deid_job_count_total', {'state': 'succeeded'}
        ),
        1,
    )

  def test_concurrent_updates(self):
    sink = metrics.MetricsSink()
    with concurrent.futures.ThreadPoolExecutor(max_workers=8) as pool:
      for _ in range(400):
        pool.submit(sink.track_error, 'conflict')
    self.assertEqual(
        sink.registry.get_sample_value(
            'dicom_deidentifier_http_error_count_total', {'code': 'conflict'}
        ),
        400,
    )

  def test_exposition(self):
    sink = metrics.MetricsSink()
    sink.track_request('GET', '/', 0.1)
    self.assertIn(
        b'dicom_deidentifier_http_request_count_total', sink.exposition()
    )

  @mock.patch.object(prometheus_client, 'start_http_server', autospec=True)
  def test_start_http_server_uses_sink_registry(self, mk_start):
    sink = metrics.MetricsSink()
    sink.start_http_server(6060)
    mk_start.assert_called_once_with(6060, registry=sink.registry)


if __name__ == '__main__':
  absltest.main()
