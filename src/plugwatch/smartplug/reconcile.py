"""Matching of LAN-discovered devices with cloud registry entries."""

from collections.abc import Iterable

from .devices import CloudDeviceRecord, LocalDeviceRecord, ReconciledDevice


def reconcile(
    local: Iterable[LocalDeviceRecord],
    cloud: Iterable[CloudDeviceRecord],
) -> list[ReconciledDevice]:
    """Merge local and cloud records that share a device id.

    The cloud supplies the local key and display name, the LAN supplies the
    address and protocol version. Local devices without a cloud entry cannot
    be addressed and are left out. Output order follows ``local``.

    Args:
        local: Devices from LAN discovery.
        cloud: Devices from the cloud registry.

    Returns:
        Addressable devices.
    """
    by_id: dict[str, CloudDeviceRecord] = {}
    for record in cloud:
        by_id.setdefault(record.device_id, record)

    return [
        ReconciledDevice.merge(record, by_id[record.device_id])
        for record in local
        if record.device_id in by_id
    ]


def unmatched(
    local: Iterable[LocalDeviceRecord],
    known: Iterable[CloudDeviceRecord | ReconciledDevice],
) -> list[LocalDeviceRecord]:
    """Local devices whose id is absent from ``known``, in input order.

    ``known`` may be the cloud list or the result of ``reconcile``.
    """
    ids = {record.device_id for record in known}
    return [record for record in local if record.device_id not in ids]
