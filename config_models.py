from dataclasses import dataclass, field


@dataclass
class AppConfig:
    name: str
    secret_key: str
    currency: str
    timezone_offset_hours: int
    referral_discount: str
    invoice_number_pattern: str
    cron_secret: str


@dataclass
class MikrotikConfig:
    enabled: bool
    host: str
    port: int
    api_port: int
    user: str
    password: str
    timeout: int
    disconnected_profile: str = "DC"
    plan_profiles: dict = field(default_factory=dict)


@dataclass
class PaymongoConfig:
    enabled: bool
    secret_key: str
    base_url: str


@dataclass
class SmsConfig:
    enabled: bool
    api_key: str
    sender_name: str
    base_url: str
