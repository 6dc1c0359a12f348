"""Outbound acknowledgement texts (Bahasa Indonesia)."""

from __future__ import annotations

from typing import Optional

SIGNATURE = "💙 Tim PRIMA"


def _medication(name: Optional[str]) -> str:
    return f"obat {name}" if name else "obat"


def verification_accepted(name: str) -> str:
    return (
        f"Terima kasih {name}! ✅\n\n"
        "Anda akan menerima pengingat obat dari relawan PRIMA.\n\n"
        "Untuk berhenti kapan saja, ketik: *BERHENTI*\n\n"
        f"{SIGNATURE}"
    )


def verification_declined(name: str) -> str:
    return f"Baik {name}, terima kasih atas responsnya.\n\nSemoga sehat selalu! 🙏\n\n{SIGNATURE}"


def verification_clarify(name: str) -> str:
    return (
        f"Halo {name}, mohon balas pesan verifikasi dengan:\n\n"
        "✅ *YA* atau *SETUJU* untuk menerima pengingat\n"
        "❌ *TIDAK* atau *TOLAK* untuk menolak\n\n"
        f"Terima kasih! {SIGNATURE}"
    )


def unsubscribed(name: str) -> str:
    return (
        f"Baik {name}, kami akan berhenti mengirimkan pengingat. 🛑\n\n"
        "Semua pengingat obat telah dinonaktifkan.\n\n"
        "Jika suatu saat ingin bergabung kembali, hubungi relawan PRIMA.\n\n"
        "Semoga sehat selalu! 🙏💙"
    )


def medication_taken(name: str, medication: Optional[str] = None) -> str:
    return f"Terima kasih {name}! ✅\n\n{_medication(medication).capitalize()} sudah dikonfirmasi diminum.\n\n{SIGNATURE}"


def medication_missed(name: str, medication: Optional[str] = None) -> str:
    return (
        f"Baik {name}, kami catat {_medication(medication)} belum diminum. ⏰\n\n"
        "Jangan lupa minum obat sesuai jadwal ya! 💊\n\n"
        f"{SIGNATURE}"
    )


def medication_help(name: str) -> str:
    return (
        f"Baik {name}, relawan kami akan segera menghubungi Anda untuk membantu. 🤝\n\n"
        "Tunggu sebentar ya!\n\n"
        f"{SIGNATURE}"
    )


def medication_clarify(name: str, medication: Optional[str] = None) -> str:
    return (
        f"Halo {name}, mohon balas dengan jelas:\n\n"
        f"✅ *SUDAH* jika sudah minum {_medication(medication)}\n"
        "⏰ *BELUM* jika belum minum\n"
        "🆘 *BANTUAN* jika butuh bantuan\n\n"
        f"Terima kasih! {SIGNATURE}"
    )


def no_pending_reminder(name: str) -> str:
    return (
        f"Halo {name}, saat ini tidak ada pengingat obat yang menunggu konfirmasi.\n\n"
        "Jika ada pertanyaan, hubungi relawan PRIMA.\n\n"
        f"{SIGNATURE}"
    )


def emergency_ack(name: str) -> str:
    return (
        f"{name}, kami menerima pesan darurat Anda. 🚨\n\n"
        "Relawan PRIMA akan segera menghubungi Anda. Jika kondisi memburuk, "
        "segera hubungi layanan darurat 119 atau datang ke IGD terdekat.\n\n"
        f"{SIGNATURE}"
    )


def general_thanks(name: str) -> str:
    return (
        f"Halo {name}, terima kasih atas pesannya.\n\n"
        "Jika ada pertanyaan tentang obat, hubungi relawan PRIMA.\n\n"
        f"{SIGNATURE}"
    )
