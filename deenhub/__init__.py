"""DeenHub Sync Engine.

Keeps local copies of Quran text and translations, recitation audio,
prayer times, hadith collections and gold prices in step with their
upstream sources, and runs the job queue, translation pipeline and API
protection around them.
"""

__version__ = "0.1.0"
