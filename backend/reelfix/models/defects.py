"""
Value objects exchanged between the analysis oracle, the pipeline and the API
"""
from pydantic import BaseModel, ConfigDict, Field
from typing import List


class DefectReport(BaseModel):
    """Defects detected in one video; drives which repair stages run"""
    model_config = ConfigDict(frozen=True)

    stuttered_cuts: int = Field(default=0, ge=0)
    audio_sync_issues: bool = False
    dropped_frames: int = Field(default=0, ge=0)
    corrupted_sections: int = Field(default=0, ge=0)
    wind_noise: bool = False

    def has_defects(self) -> bool:
        return bool(
            self.stuttered_cuts
            or self.audio_sync_issues
            or self.dropped_frames
            or self.corrupted_sections
            or self.wind_noise
        )

    def recommendations(self) -> List[str]:
        recommendations = []
        if self.stuttered_cuts > 0:
            recommendations.append("Fix stuttered cuts")
        if self.audio_sync_issues:
            recommendations.append("Repair audio sync")
        if self.dropped_frames > 0:
            recommendations.append("Recover dropped frames")
        if self.corrupted_sections > 0:
            recommendations.append("Repair corrupted sections")
        if self.wind_noise:
            recommendations.append("Remove wind noise from audio")
        return recommendations


class DefectAnalysis(BaseModel):
    model_config = ConfigDict(frozen=True)

    issues: DefectReport
    recommendations: List[str] = []
    degraded: bool = False  # True when the oracle could not run and defaults were used

    @classmethod
    def from_report(cls, report: DefectReport) -> "DefectAnalysis":
        return cls(issues=report, recommendations=report.recommendations())

    @classmethod
    def conservative_default(cls) -> "DefectAnalysis":
        """All defects assumed absent; only the unconditional export runs"""
        return cls(issues=DefectReport(), recommendations=[], degraded=True)


class FixesApplied(BaseModel):
    """What the pipeline actually repaired; a stage that fell back reports nothing"""
    model_config = ConfigDict(frozen=True)

    stuttered_cuts_fixed: int = Field(default=0, ge=0)
    audio_sync_fixed: bool = False
    frames_recovered: int = Field(default=0, ge=0)
    sections_repaired: int = Field(default=0, ge=0)
    wind_noise_removed: bool = False


class CaptionSegment(BaseModel):
    start: float
    end: float
    text: str


class CaptionResult(BaseModel):
    text: str = ""
    segments: List[CaptionSegment] = []
