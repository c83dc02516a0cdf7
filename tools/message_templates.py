"""
Message Templates
Text for reminders, escalations and caregiver alerts
"""

import random
from datetime import datetime
from typing import Dict, Optional


REMINDER_TEMPLATES: Dict[str, Dict] = {
    "en": {
        "initial": [
            "⏰ Time for your {medication}!\n\n{dose}",
            "💊 Medication reminder: {medication}\n\nPlease take {dose}",
            "🔔 Don't forget: {medication}\n\n{dose}",
        ],
        "urgent": (
            "🚨 *URGENT REMINDER*\n\n{medication} was due {time_ago}.\n\n"
            "Please take it now or let me know if you're skipping today."
        ),
        "voice": "Urgent reminder: Your {medication} was due {time_ago}. Please take it now.",
        "caregiver": (
            "🚨 *Caregiver Alert*\n\n{patient_name} hasn't taken their {medication} "
            "which was due {time_ago}.\n\nThis is {relationship}.\n\nCan you please check on them?"
        ),
        "critical": (
            "⚠️ *CRITICAL ALERT*\n\nYou've missed your {medication} for over 2 hours.\n\n"
            "{critical_note}Please take it immediately or contact your healthcare provider."
        ),
    },
    "zu": {
        "initial": [
            "⏰ Isikhathi somuthi wakho {medication}!\n\n{dose}",
            "💊 Isikhumbuzi somuthi: {medication}\n\nNgicela uthathe {dose}",
            "🔔 Ungakhohlwa: {medication}\n\n{dose}",
        ],
        "urgent": (
            "🚨 *ISIKHUMBUZI ESIPHUTHUMAYO*\n\n{medication} bekufanele uthathwe {time_ago}.\n\n"
            "Ngicela uyithathe manje noma ungazise uma uyeqa namhlanje."
        ),
    },
    "hi": {
        "initial": [
            "⏰ आपकी {medication} का समय!\n\n{dose}",
            "💊 दवा अनुस्मारक: {medication}\n\nकृपया {dose} लें",
            "🔔 मत भूलिए: {medication}\n\n{dose}",
        ],
        "urgent": (
            "🚨 *जरूरी अनुस्मारक*\n\n{medication} {time_ago} देय थी।\n\n"
            "कृपया अभी लें या बताएं यदि आज छोड़ रहे हैं।"
        ),
    },
}

# Patient language -> voice-call locale
VOICE_LANGUAGES = {
    "en": "en-US",
    "zu": "en-ZA",
    "hi": "hi-IN",
    "ha": "en-NG",
    "sw": "sw-KE",
    "pt": "pt-BR",
    "es": "es-MX",
}


def get_template(language: str, kind: str) -> str:
    """Template for `kind` in `language`, falling back to English"""
    templates = REMINDER_TEMPLATES.get(language) or REMINDER_TEMPLATES["en"]
    template = templates.get(kind) or REMINDER_TEMPLATES["en"][kind]
    if isinstance(template, list):
        template = random.choice(template)
    return template


def time_ago(moment: datetime, now: datetime) -> str:
    """Human phrase for how long ago `moment` was"""
    minutes = int((now - moment).total_seconds() // 60)
    if minutes < 60:
        return f"{minutes} minutes ago"
    if minutes < 120:
        return "over an hour ago"
    return f"{minutes // 60} hours ago"


def voice_language(language: Optional[str]) -> str:
    return VOICE_LANGUAGES.get(language or "en", "en-US")


def format_dose(amount: Optional[str], unit: Optional[str]) -> str:
    if not amount:
        return ""
    return f"{amount} {unit or 'unit'}"


def reminder_message(medication: str, dose: str, language: str = "en") -> str:
    return get_template(language, "initial").format(medication=medication, dose=dose).rstrip()


def urgent_message(medication: str, ago: str, language: str = "en") -> str:
    return get_template(language, "urgent").format(medication=medication, time_ago=ago)


def voice_message(medication: str, ago: str, language: str = "en") -> str:
    return get_template(language, "voice").format(medication=medication, time_ago=ago)


def caregiver_message(patient_name: str, medication: str, ago: str, relationship: Optional[str]) -> str:
    return get_template("en", "caregiver").format(
        patient_name=patient_name,
        medication=medication,
        time_ago=ago,
        relationship=f"their {relationship}" if relationship else "their caregiver",
    )


def critical_message(medication: str, critical: bool, language: str = "en") -> str:
    return get_template(language, "critical").format(
        medication=medication,
        critical_note="This is a critical medication. " if critical else "",
    )


def voice_call_script(medication: str, ago: str, language: str, callback_url: str) -> str:
    """
    Call script for an interactive voice call

    Digits gathered by the call: 1 taken, 2 snooze, 3 skip.
    """
    return (
        "<Response>"
        f'<Say voice="alice" language="{voice_language(language)}">'
        f"This is your medication reminder. Your {medication} was due {ago}. "
        "Please take it as soon as possible. "
        "Press 1 if you've taken it, 2 to snooze, or 3 to skip."
        "</Say>"
        f'<Gather numDigits="1" action="{callback_url}">'
        "<Say>Press 1 for taken, 2 to snooze, or 3 to skip.</Say>"
        "</Gather>"
        "</Response>"
    )
