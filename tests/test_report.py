import json

import pytest

from rtc_probe.analyzer import ReceiveBuffer, analyze_media, analyze_run
from rtc_probe.commands import DoneReport
from rtc_probe.packet import encode_packet
from rtc_probe.report import convert_bytes, format_summary, plot_delays, save_results
from rtc_probe.stats import StatsSample, current_formatted_date


def _analysis(completed=True):
    buffer = ReceiveBuffer()
    for seq, delay in ((0, 12), (1, 15), (3, 140)):
        buffer.add(encode_packet(seq, 512, now_ms=5000), received_at=5000 + delay)
    return analyze_run(buffer, 5, 100, done=DoneReport(5, 2560) if completed else None, completed=completed)


@pytest.mark.parametrize("num_bytes, unit, digits, expected", [
    (1024, "KB", 2, (1.02, "KB")),
    (1024 * 1024, "MB", 0, (1, "MB")),
    (1500, None, 4, (1.5, "KB")),
    (500, None, 4, (500, "B")),
    (3_500_000_000, None, 2, (3.5, "GB")),
    (0, None, 4, (0, "B")),
    (None, None, 4, (0, "B")),
])
def test_convert_bytes(num_bytes, unit, digits, expected):
    assert convert_bytes(num_bytes, unit, digits) == expected


def test_current_formatted_date():
    text = current_formatted_date()
    assert text.endswith(("AM", "PM"))
    assert text.count(":") == 2


def test_format_summary():
    text = format_summary(_analysis())
    assert "3/5 packets" in text
    assert "40.00%" in text
    assert "[2, 4]" in text
    assert "2.56 KB" in text


def test_format_summary_incomplete_run():
    text = format_summary(_analysis(completed=False))
    assert "undefined" in text


def test_save_results(tmp_path):
    output = tmp_path / "results.json"
    save_results(_analysis(), str(output))

    data = json.loads(output.read_text())
    assert data["missing"] == [2, 4]
    assert data["loss_percent"] == 40.0
    assert len(data["records"]) == 3
    assert "generated_at" in data


def test_plot_delays(tmp_path):
    output = tmp_path / "delays.png"
    plot_delays(_analysis(), str(output))
    assert output.exists()
    assert output.stat().st_size > 0


def test_summary_header_names_the_mode():
    assert "RUN RESULTS (datachannel, " in format_summary(_analysis())


def test_summary_shows_channel_counters():
    buffer = ReceiveBuffer()
    buffer.add(encode_packet(0, 64, now_ms=100), received_at=110)
    samples = [StatsSample(time="10:00:00 AM", messages_received=4)]
    analysis = analyze_run(buffer, 2, 100, done=DoneReport(2, 128), samples=samples, control_messages=2)

    assert "Channel counters:    2 received, 0.00% loss" in format_summary(analysis)


def test_media_summary(tmp_path):
    samples = [
        StatsSample(time="10:00:00 AM", packets_sent=100, media_bytes_sent=120000,
                    packets_lost=0, round_trip_time=0.02, jitter=1),
        StatsSample(time="10:00:01 AM", packets_sent=300, media_bytes_sent=360000,
                    packets_lost=6, round_trip_time=0.04, jitter=3),
    ]
    analysis = analyze_media(samples, 150)

    text = format_summary(analysis)
    assert "RUN RESULTS (media, " in text
    assert "300 packets, 360.0 KB" in text
    assert "Stats samples:       2" in text
    assert "6 (2.00%)" in text
    assert "30.00 ms" in text

    path = save_results(analysis, str(tmp_path / "media.json"))
    with open(path) as f:
        data = json.load(f)
    assert data["mode"] == "media"
    assert data["media"]["packets_lost"] == 6
    assert len(data["samples"]) == 2
