"""
Run reports: console summary, JSON results and a delay plot.
"""

import json
import math
import time

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

from .analyzer import RunAnalysis
from .stats import current_formatted_date

SIZE_UNITS = ["B", "KB", "MB", "GB"]


def convert_bytes(num_bytes=None, unit: str = None, fraction_digits: int = 4):
    """
    Human readable size (decimal units). Returns (value, unit); picks the
    unit from the magnitude unless one is given.
    """
    if not num_bytes:
        return 0, SIZE_UNITS[0]
    if unit is None:
        index = min(int(math.floor(math.log10(num_bytes) / 3)), len(SIZE_UNITS) - 1)
        index = max(index, 0)
    else:
        index = SIZE_UNITS.index(unit)
    value = round(num_bytes / 10 ** (index * 3), fraction_digits)
    if fraction_digits == 0:
        value = int(value)
    return value, SIZE_UNITS[index]


def format_summary(analysis: RunAnalysis) -> str:
    lines = ["=" * 60, f"RUN RESULTS ({analysis.mode}, {current_formatted_date()})", "=" * 60]
    if analysis.media is not None:
        return "\n".join(lines + _media_lines(analysis) + ["=" * 60])

    if analysis.bytes_sent is not None:
        value, unit = convert_bytes(analysis.bytes_sent, fraction_digits=2)
        lines.append(f"Sent (gateway):      {analysis.messages_sent} packets, {value} {unit}")
    lines.append(f"Received:            {analysis.received_count}/{analysis.expected_total} packets")
    if analysis.completed:
        lines.append(f"Packet loss:         {analysis.loss_percent:.2f}%")
        if analysis.sampled_loss_percent is not None:
            lines.append(f"Channel counters:    {analysis.sampled_received} received, "
                         f"{analysis.sampled_loss_percent:.2f}% loss")
        missing = analysis.missing
        preview = ", ".join(str(n) for n in missing[:20]) + (" ..." if len(missing) > 20 else "")
        lines.append(f"Missing:             {len(missing)}" + (f" [{preview}]" if missing else ""))
    else:
        lines.append("Packet loss:         undefined (run did not complete)")
    lines.append(f"Duplicates:          {analysis.duplicates}")
    lines.append(f"Reordered:           {analysis.reordered}")
    lines.append("-" * 60)
    delay = analysis.delay
    lines.append(f"Average delay:       {delay.mean_ms:.2f} ms")
    lines.append(f"Median (P50):        {delay.median_ms:.2f} ms")
    lines.append(f"95th percentile:     {delay.p95_ms:.2f} ms")
    lines.append(f"Min / max delay:     {delay.min_ms:.2f} / {delay.max_ms:.2f} ms")
    lines.append(f"Jitter:              {delay.jitter_ms:.2f} ms")
    lines.append(f"Over {analysis.acceptable_delay_ms} ms:        {len(analysis.delayed)} packets")
    if analysis.mos is not None:
        lines.append(f"MOS estimate:        {analysis.mos:.2f}")
    lines.append("=" * 60)
    return "\n".join(lines)


def _media_lines(analysis: RunAnalysis) -> list:
    media = analysis.media
    value, unit = convert_bytes(media.bytes_sent, fraction_digits=2)
    lines = [
        f"RTP sent:            {media.packets_sent} packets, {value} {unit}",
        f"Stats samples:       {len(analysis.samples)}",
    ]
    if analysis.completed:
        lines.append(f"Packets lost:        {media.packets_lost} ({media.loss_percent:.2f}%)")
    else:
        lines.append("Packets lost:        undefined (run did not complete)")
    if media.round_trip_ms is not None:
        lines.append(f"Round trip:          {media.round_trip_ms:.2f} ms")
    if media.jitter is not None:
        lines.append(f"Jitter (RTP units):  {media.jitter:.2f}")
    return lines


def save_results(analysis: RunAnalysis, output_file: str, include_records: bool = True):
    data = analysis.to_dict(include_records=include_records)
    data['generated_at'] = time.strftime("%Y-%m-%dT%H:%M:%S")
    with open(output_file, 'w') as f:
        json.dump(data, f, indent=2)
    return output_file


def plot_delays(analysis: RunAnalysis, output_file: str):
    """Delay per sequence number, with lost packets marked on the x axis."""
    fig, ax = plt.subplots(figsize=(12, 5))

    records = sorted(analysis.records, key=lambda r: r.sequence_number)
    seqs = [r.sequence_number for r in records]
    delays = [r.delay_ms for r in records]
    late = set(analysis.delayed)

    ax.plot(seqs, delays, color='#3498db', linewidth=1, label='Delay')
    late_points = [(r.sequence_number, r.delay_ms) for r in records if r.sequence_number in late]
    if late_points:
        ax.scatter(*zip(*late_points), color='#e67e22', s=12, zorder=3,
                   label=f'> {analysis.acceptable_delay_ms} ms')
    if analysis.missing:
        ax.scatter(analysis.missing, [0] * len(analysis.missing), color='#e74c3c',
                   marker='x', zorder=3, label='Lost')

    ax.axhline(analysis.acceptable_delay_ms, color='#7f8c8d', linestyle='--', linewidth=1)
    ax.set_xlabel('Sequence number')
    ax.set_ylabel('Delay (ms)')
    title = f'Delivery delay - {analysis.received_count}/{analysis.expected_total} received'
    if analysis.loss_percent is not None:
        title += f', {analysis.loss_percent:.1f}% loss'
    ax.set_title(title)
    ax.grid(True, alpha=0.3)
    ax.legend(loc='upper right')

    fig.tight_layout()
    fig.savefig(output_file, dpi=120)
    plt.close(fig)
    return output_file
