import unittest
from datetime import datetime, timezone

from unraid_bff import mappers


class ScalarTests(unittest.TestCase):
    def test_to_number(self):
        self.assertEqual(mappers.to_number("12"), 12)
        self.assertEqual(mappers.to_number("1.5"), 1.5)
        self.assertEqual(mappers.to_number(True, 7), 7)
        self.assertEqual(mappers.to_number(float("nan"), 3), 3)
        self.assertEqual(mappers.to_number("abc", 4), 4)
        self.assertEqual(mappers.to_number("1_000", 5), 5)

    def test_format_bytes(self):
        self.assertEqual(mappers.format_bytes(0), "0.0 B")
        self.assertEqual(mappers.format_bytes(1536), "1.5 KB")
        self.assertEqual(mappers.format_bytes(200 * 1024 * 1024), "200 MB")
        self.assertEqual(mappers.format_kilobytes(0), "-")

    def test_format_duration(self):
        self.assertEqual(mappers.format_duration(3725), "1h 2m")
        self.assertEqual(mappers.format_duration(125), "2m 5s")
        self.assertEqual(mappers.format_duration(9), "9s")
        self.assertEqual(mappers.format_duration(None), "-")

    def test_format_uptime(self):
        self.assertEqual(mappers.format_uptime(90061), "1d 1h")
        self.assertEqual(mappers.format_uptime("3700"), "1h 1m")
        self.assertEqual(mappers.format_uptime(0), "-")
        self.assertEqual(mappers.format_uptime("garbage"), "-")
        now = datetime(2024, 1, 2, 0, 0, tzinfo=timezone.utc)
        self.assertEqual(mappers.format_uptime("2024-01-01T00:00:00Z", now=now), "1d 0h")

    def test_format_disk_temp_and_license(self):
        self.assertEqual(mappers.format_disk_temp(34.5), "35 C")
        self.assertEqual(mappers.format_disk_temp(None), "-")
        self.assertEqual(mappers.format_license_type("PRO"), "Pro")
        self.assertEqual(mappers.format_license_type(None), "-")

    def test_normalize_status(self):
        self.assertEqual(mappers.normalize_status("RUNNING"), "running")
        self.assertEqual(mappers.normalize_status("exited"), "stopped")
        self.assertEqual(mappers.normalize_status("SHUTOFF"), "stopped")
        self.assertEqual(mappers.normalize_status("paused"), "unknown")
        self.assertEqual(mappers.normalize_status(None), "unknown")


class OverviewTests(unittest.TestCase):
    def test_legacy_info_fallbacks(self):
        overview = mappers.map_overview({"info": {"cpuUsage": 33.8, "memoryUsage": 52.2}})
        self.assertEqual(overview["cpuPercent"], 34)
        self.assertEqual(overview["memoryPercent"], 52)
        self.assertEqual(overview["cpuModel"], "Unknown CPU")
        self.assertEqual(overview["serverName"], "Unraid")
        self.assertEqual(overview["notifications"], [])

    def test_assembled_sections(self):
        overview = mappers.map_overview(
            {
                "core": {
                    "vars": {"name": "Tower", "regTy": "PLUS"},
                    "info": {"cpu": {"brand": "Ryzen"}, "baseboard": {"manufacturer": "ASRock", "model": "X570"}},
                    "metrics": {"cpu": {"percentTotal": 120}},
                    "array": {"capacity": {"kilobytes": {"used": 25, "total": 100, "free": 75}}},
                },
                "notifications": {
                    "notifications": {
                        "overview": {"unread": {"alert": 2, "total": 2}},
                        "warningsAndAlerts": [{"id": "n1", "importance": "ALERT", "title": "Disk"}],
                    }
                },
                "network": None,
                "ups": {"upsDevices": [{"id": "ups1", "battery": {"chargeLevel": 90}}]},
            }
        )
        self.assertEqual(overview["serverName"], "Tower")
        self.assertEqual(overview["licenseType"], "Plus")
        self.assertEqual(overview["cpuModel"], "Ryzen")
        self.assertEqual(overview["cpuPercent"], 100)
        self.assertEqual(overview["motherboard"], "ASRock X570")
        self.assertEqual(overview["arrayUsagePercent"], 25)
        self.assertEqual(overview["unreadNotifications"]["alert"], 2)
        self.assertEqual(overview["notifications"][0]["type"], "alert")
        self.assertEqual(overview["ups"]["devices"][0]["batteryLevel"], 90)
        self.assertEqual(overview["accessUrls"], [])


class ArrayTests(unittest.TestCase):
    def test_usage_is_clamped(self):
        result = mappers.map_array({"devices": [{"id": "disk1", "usagePercent": 140}]})
        self.assertEqual(result["devices"][0]["usagePercent"], 100)

    def test_structural_lists_classify_devices(self):
        result = mappers.map_array(
            {
                "array": {
                    "parities": [{"id": "p1", "type": "DATA"}],
                    "disks": [{"id": "d1", "size": 100, "fsUsed": 40}],
                    "caches": [{"id": "c1"}],
                }
            }
        )
        roles = [(device["id"], device["role"]) for device in result["devices"]]
        self.assertEqual(roles, [("p1", "parity"), ("d1", "array"), ("c1", "pool")])
        self.assertTrue(result["devices"][0]["isParity"])
        self.assertEqual(result["devices"][1]["usagePercent"], 40)
        self.assertEqual(result["devices"][2]["diskType"], "pool")

    def test_flat_list_uses_type(self):
        self.assertEqual(mappers.classify_device(None, "parity"), "parity")
        self.assertEqual(mappers.classify_device(None, "CACHE"), "pool")
        self.assertEqual(mappers.classify_device(None, None), "array")


class DockerTests(unittest.TestCase):
    def test_ports_summary(self):
        ports = [{"privatePort": 80, "publicPort": 8080, "type": "TCP"}, {"privatePort": 53, "type": "udp"}]
        self.assertEqual(mappers.summarize_ports(ports), "8080->80/tcp, 53/udp")
        self.assertEqual(mappers.summarize_ports([]), "-")
        many = [{"privatePort": port} for port in range(1, 7)]
        self.assertEqual(mappers.summarize_ports(many), "1/tcp, 2/tcp, 3/tcp, 4/tcp...")

    def test_map_docker(self):
        result = mappers.map_docker(
            {
                "docker": {
                    "containers": [
                        {
                            "id": "c1",
                            "names": ["/plex"],
                            "state": "RUNNING",
                            "labels": {mappers.DOCKER_WEBUI_LABEL: "http://tower:32400"},
                            "isUpdateAvailable": True,
                        },
                        {"id": "c2", "names": ["/db"], "state": "EXITED"},
                    ]
                }
            }
        )
        self.assertEqual(result["summary"], {"running": 1, "stopped": 1, "updatesAvailable": 1})
        plex = result["containers"][0]
        self.assertEqual(plex["name"], "plex")
        self.assertEqual(plex["endpoint"], "http://tower:32400")
        self.assertEqual(plex["network"], "bridge")
        self.assertEqual(result["containers"][1]["status"], "stopped")


class VmAndShareTests(unittest.TestCase):
    def test_paused_vm_is_unknown(self):
        result = mappers.map_vms({"vms": [{"id": "vm1", "name": "VM1", "status": "paused"}]})
        self.assertEqual(result["vms"][0]["status"], "unknown")
        self.assertEqual(result["summary"]["paused"], 1)

    def test_domains_shape(self):
        result = mappers.map_vms({"vms": {"domains": [{"id": "v", "name": "Win", "state": "SHUTOFF"}]}})
        self.assertEqual(result["vms"][0]["status"], "stopped")
        self.assertEqual(result["vms"][0]["stateLabel"], "SHUTOFF")

    def test_shares(self):
        result = mappers.map_shares(
            {"shares": [{"id": "s", "name": "media", "used": 30, "free": 70, "include": ["disk1"], "cache": True}]}
        )
        share = result["shares"][0]
        self.assertEqual(share["usagePercent"], 30)
        self.assertEqual(share["location"], "Include: disk1")
        self.assertEqual(share["cached"], "yes")
        self.assertEqual(share["allocator"], "-")


if __name__ == "__main__":
    unittest.main()
